"""Server-side turn coordination: the pure machine and its effect executor."""

from turnkeeper.coordinator.turns import TurnCoordinator

__all__ = ["TurnCoordinator"]
