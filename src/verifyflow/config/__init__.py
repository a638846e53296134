from __future__ import annotations

from verifyflow.config.loaders import load_pipeline_config, load_test_plan
from verifyflow.config.models import (
    DEFAULT_ACTIVATION_BRANCHES,
    DEFAULT_ACTIVATION_TAGS,
    ActivationConfig,
    JobConfig,
    MatrixEntryConfig,
    PipelineConfig,
    PipelineSection,
    PublishConfig,
    RuntimeConfig,
    StepConfig,
    TestCaseConfig,
    TestPlanConfig,
)

__all__ = [
    "ActivationConfig",
    "DEFAULT_ACTIVATION_BRANCHES",
    "DEFAULT_ACTIVATION_TAGS",
    "JobConfig",
    "MatrixEntryConfig",
    "PipelineConfig",
    "PipelineSection",
    "PublishConfig",
    "RuntimeConfig",
    "StepConfig",
    "TestCaseConfig",
    "TestPlanConfig",
    "load_pipeline_config",
    "load_test_plan",
]
