from .agent import EnvironmentAgent
from .naming import resolve
from .rendering import load_base_template, render

__all__ = ["EnvironmentAgent", "resolve", "render", "load_base_template"]
