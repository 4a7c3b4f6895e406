"""deferit - defer decisions and tasks, and work them in dependency order."""

__version__ = "0.1.0"
