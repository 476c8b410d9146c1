"""Local state database models (owned by this service)."""

from setupkit.models.state.bootstrap_config import BootstrapConfig
from setupkit.models.state.setup_step import SetupStepState

__all__ = ["BootstrapConfig", "SetupStepState"]
