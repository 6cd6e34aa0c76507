"""
Runtime service — coordinator/daemon supervision, diagnostics and setup.
"""

from dm.core.services.runtime.doctor import doctor  # noqa: F401
from dm.core.services.runtime.setup import setup  # noqa: F401
from dm.core.services.runtime.supervisor import (  # noqa: F401
    ProcessHandle,
    RuntimeSupervisor,
    down,
    get_supervisor,
    passthrough,
    status,
    up,
)
