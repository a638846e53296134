from __future__ import annotations

import importlib
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from verifyflow.config.models import RuntimeConfig
from verifyflow.errors import ConfigValidationError
from verifyflow.targets.bare import BareProvisioner
from verifyflow.targets.base import Provisioner, TargetKind
from verifyflow.targets.container import ContainerProvisioner
from verifyflow.targets.vm import QemuProvisioner

DEFAULT_DRIVERS: Mapping[str, Callable[..., Provisioner]] = {
    TargetKind.BARE.value: BareProvisioner,
    TargetKind.CONTAINER.value: ContainerProvisioner,
    TargetKind.VM.value: QemuProvisioner,
}


def _import_callable(callable_ref: str) -> Callable[..., Any]:
    if ":" not in callable_ref:
        raise ConfigValidationError(
            f"invalid driver ref '{callable_ref}'. expected 'module:callable'"
        )
    module_name, attr = callable_ref.split(":", 1)
    if not module_name or not attr:
        raise ConfigValidationError(
            f"invalid driver ref '{callable_ref}'. expected 'module:callable'"
        )
    try:
        module = importlib.import_module(module_name)
    except Exception as exc:
        raise ConfigValidationError(f"failed importing module '{module_name}': {exc}") from exc
    try:
        loaded = getattr(module, attr)
    except AttributeError as exc:
        raise ConfigValidationError(
            f"callable '{attr}' not found in module '{module_name}'"
        ) from exc
    if not callable(loaded):
        raise ConfigValidationError(f"reference '{callable_ref}' does not resolve to callable")
    return loaded


def build_provisioners(
    settings: RuntimeConfig,
    workspace: str | Path,
    *,
    cloudinit_root: Path | None = None,
) -> dict[str, Provisioner]:
    """Instantiate one provisioner per target kind, honoring ``runtime.drivers``."""
    factories: dict[str, Callable[..., Any]] = dict(DEFAULT_DRIVERS)
    for kind, ref in settings.drivers.items():
        factories[kind] = _import_callable(ref)

    provisioners: dict[str, Provisioner] = {}
    for kind, factory in factories.items():
        try:
            provisioner = factory(settings, Path(workspace), cloudinit_root=cloudinit_root)
        except TypeError as exc:
            raise ConfigValidationError(
                f"driver for '{kind}' must accept (settings, workspace, *, cloudinit_root): {exc}"
            ) from exc
        if not isinstance(provisioner, Provisioner):
            raise ConfigValidationError(
                f"driver for '{kind}' returned {type(provisioner).__name__}, expected a Provisioner"
            )
        provisioners[kind] = provisioner
    return provisioners
