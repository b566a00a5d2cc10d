"""Platform access: context provider and the in-memory platform."""

from docstate.platform.context import PlatformContextProvider
from docstate.platform.memory import FaultPlan, InMemoryPlatform

__all__ = ["FaultPlan", "InMemoryPlatform", "PlatformContextProvider"]
