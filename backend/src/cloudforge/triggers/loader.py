"""Load application cloud code into a registry.

A cloud module is any importable module exposing ``register(registry)``.
It is imported once at startup; registration errors surface here, never
at invocation time.
"""

import importlib
import logging

from cloudforge.triggers.errors import HandlerShapeError
from cloudforge.triggers.registry import TriggerRegistry

logger = logging.getLogger(__name__)


def load_cloud_module(registry: TriggerRegistry, module_path: str) -> None:
    """Import module_path and call its register(registry).

    Raises:
        HandlerShapeError: If the module has no register() or any of its
            registrations is malformed
        ImportError: If the module cannot be imported
    """
    module = importlib.import_module(module_path)
    register = getattr(module, "register", None)
    if not callable(register):
        raise HandlerShapeError(f"Cloud module '{module_path}' does not define register(registry)")

    register(registry)
    logger.info(
        "Loaded cloud module %s: %d hook(s), %d function(s), %d job(s)",
        module_path,
        len(registry.list_hooks()),
        len(registry.list_functions()),
        len(registry.list_jobs()),
    )
