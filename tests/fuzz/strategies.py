from __future__ import annotations

from hypothesis import strategies as st

REF_ALPHABET = st.sampled_from("abcdefghijklmnopqrstuvwxyz0123456789-_/.")

REF_TEXT = st.text(REF_ALPHABET, min_size=0, max_size=40)

MARKERS = st.text(st.sampled_from("abcdefghijklmnopqrstuvwxyz"), min_size=1, max_size=6)


@st.composite
def dag_specs(draw: st.DrawFn, max_jobs: int = 8) -> list[tuple[str, tuple[str, ...]]]:
    """Job names with dependencies drawn only from earlier jobs, so acyclic."""
    count = draw(st.integers(min_value=1, max_value=max_jobs))
    names = [f"job{index}" for index in range(count)]
    jobs: list[tuple[str, tuple[str, ...]]] = []
    for index, name in enumerate(names):
        earlier = names[:index]
        needs = draw(st.lists(st.sampled_from(earlier), unique=True)) if earlier else []
        jobs.append((name, tuple(needs)))
    order = draw(st.permutations(jobs))
    return list(order)
