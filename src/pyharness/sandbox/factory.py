from __future__ import annotations

from .base import SandboxSession
from .container import ContainerSandbox
from .host import HostSandbox
from .restricted import RestrictedSandbox
from ..config.models import SandboxMode, SandboxSettings

_VARIANTS: dict[SandboxMode, type[SandboxSession]] = {
    SandboxMode.NONE: HostSandbox,
    SandboxMode.RESTRICTED: RestrictedSandbox,
    SandboxMode.CONTAINERIZED: ContainerSandbox,
}


def create_sandbox(settings: SandboxSettings, cwd: str) -> SandboxSession:
    """Pick the sandbox variant for a session. Call `start()` on the result."""
    return _VARIANTS[settings.mode](settings, cwd)
