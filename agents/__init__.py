from .environment import EnvironmentAgent

__all__ = ["EnvironmentAgent"]
