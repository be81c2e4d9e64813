"""Winner-selection policies.

A policy looks at a session after each batch of agent reports and names
the agent to promote, or None to keep waiting.
"""

from abc import ABC, abstractmethod

from parallel_runner.core.models import AgentStatus, AgentWorktree, TaskSession


class WinnerPolicy(ABC):
    """Base class for winner-selection rules."""

    name: str
    description: str

    @abstractmethod
    def select(self, session: TaskSession) -> AgentWorktree | None:
        """Return the agent to promote, or None if no winner yet.

        Only agents in ``finished`` may be returned.
        """
        pass


class FirstFinisherPolicy(WinnerPolicy):
    """Promote the first agent to finish.

    Reports that arrive in the same batch count as simultaneous; among the
    agents finished at evaluation time the lexicographically smallest
    ``agent_id`` wins, so the outcome never depends on thread scheduling.
    """

    name = "first_finisher"
    description = "First finished agent wins; ties go to the smallest agent id"

    def select(self, session: TaskSession) -> AgentWorktree | None:
        finished = session.agents_with_status(AgentStatus.FINISHED)
        if not finished:
            return None
        return min(finished, key=lambda agent: agent.agent_id)


class ManualPolicy(WinnerPolicy):
    """Never auto-select; an operator picks the winner explicitly."""

    name = "manual"
    description = "Wait for an operator to choose among finished agents"

    def select(self, session: TaskSession) -> AgentWorktree | None:
        return None


# Policy registry
POLICIES: dict[str, type[WinnerPolicy]] = {
    FirstFinisherPolicy.name: FirstFinisherPolicy,
    ManualPolicy.name: ManualPolicy,
}


def get_policy(name: str) -> WinnerPolicy:
    """Get a policy instance by name.

    Raises:
        ValueError: If the policy is not registered
    """
    if name not in POLICIES:
        raise ValueError(f"Unknown winner policy '{name}'. Available: {list(POLICIES.keys())}")
    return POLICIES[name]()
