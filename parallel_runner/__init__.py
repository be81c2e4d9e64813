"""parallel-runner - run several coding agents on one task.

Each agent works in its own git worktree and branch; one is promoted as the
winner and the rest are cleaned up.
"""

__version__ = "0.1.0"
