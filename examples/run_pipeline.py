from __future__ import annotations

import logging
import sys

from verifyflow import PipelineRuntime


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    ref = sys.argv[1] if len(sys.argv) > 1 else "refs/heads/main"
    runtime = PipelineRuntime.from_configs("examples/verify.toml")
    pipeline_run = runtime.run(ref)
    for job_run in pipeline_run:
        print(f"{job_run.id:40} {job_run.state.value}")
    print(pipeline_run.report_files.get("report_md"))
    return 0 if pipeline_run.succeeded else 1


if __name__ == "__main__":
    raise SystemExit(main())
