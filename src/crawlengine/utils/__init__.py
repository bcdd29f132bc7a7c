"""
Utilities Package.

Provides human-like interaction simulation for loaded pages.
"""

from .human_simulator import (
    BehaviorConfig,
    HumanBehaviorSimulator,
    PageDimensions,
    SimulationReport,
    create_human_simulator,
)

__all__ = [
    "BehaviorConfig",
    "HumanBehaviorSimulator",
    "PageDimensions",
    "SimulationReport",
    "create_human_simulator",
]
