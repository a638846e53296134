"""Job gating and pipeline activation.

A job runs by default. When the activation ref carries the generic selective
marker (``ci`` by default) the pipeline is in selective mode and a job only
runs if the ref also carries that job's own marker, e.g. ``ci-build-linux``.

Matching is plain, case-sensitive substring containment on the whole ref
string. This is a naming convention rather than a grammar: a branch such as
``decision`` contains ``ci`` and therefore narrows the pipeline too.
"""

from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Union

from verifyflow.config.models import DEFAULT_ACTIVATION_BRANCHES, DEFAULT_ACTIVATION_TAGS

_HEADS_PREFIX = "refs/heads/"
_TAGS_PREFIX = "refs/tags/"


@dataclass(frozen=True, slots=True)
class Always:
    def describe(self) -> str:
        return "always"


@dataclass(frozen=True, slots=True)
class SelectiveMarker:
    marker: str
    specific: str

    def describe(self) -> str:
        return f"unless '{self.marker}' in ref, then require '{self.specific}'"


GatingRule = Union[Always, SelectiveMarker]


def should_run(ref: str, rule: GatingRule) -> bool:
    if isinstance(rule, Always):
        return True
    return (rule.marker not in ref) or (rule.specific in ref)


def rule_for(gate: str | None, marker: str = "ci") -> GatingRule:
    if gate is None:
        return Always()
    return SelectiveMarker(marker=marker, specific=gate)


@dataclass(frozen=True, slots=True)
class ActivationRules:
    branches: tuple[str, ...] = DEFAULT_ACTIVATION_BRANCHES
    tags: tuple[str, ...] = DEFAULT_ACTIVATION_TAGS


def split_ref(ref: str) -> tuple[str, str]:
    """Return ``(kind, short_name)`` where kind is ``branch`` or ``tag``."""
    if ref.startswith(_TAGS_PREFIX):
        return "tag", ref[len(_TAGS_PREFIX):]
    if ref.startswith(_HEADS_PREFIX):
        return "branch", ref[len(_HEADS_PREFIX):]
    return "branch", ref


def activates(ref: str, rules: ActivationRules | None = None) -> bool:
    rules = rules or ActivationRules()
    kind, name = split_ref(ref)
    patterns = rules.tags if kind == "tag" else rules.branches
    return any(fnmatchcase(name, pattern) for pattern in patterns)
