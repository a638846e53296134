from __future__ import annotations

from verifyflow.targets.bare import BareProvisioner
from verifyflow.targets.base import (
    ExecutionTarget,
    Provisioner,
    TargetKind,
    TargetState,
    capability_tags,
    provisioned,
)
from verifyflow.targets.container import ContainerProvisioner
from verifyflow.targets.drivers import DEFAULT_DRIVERS, build_provisioners
from verifyflow.targets.vm import QemuProvisioner, fetch_image

__all__ = [
    "BareProvisioner",
    "ContainerProvisioner",
    "DEFAULT_DRIVERS",
    "ExecutionTarget",
    "Provisioner",
    "QemuProvisioner",
    "TargetKind",
    "TargetState",
    "build_provisioners",
    "capability_tags",
    "fetch_image",
    "provisioned",
]
