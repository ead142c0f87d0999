from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.dispatch import DispatchQueue
from orchestrator.dlq import DLQManager
from orchestrator.pipelines.machine import PipelineStateMachine
from orchestrator.pipelines.registry import PipelineRegistry, registry as default_registry
from orchestrator.retry import RetryCoordinator
from orchestrator.store import TaskStore
from orchestrator.utils.clock import Clock, utc_now


class Engine:
    """
    Component graph bound to one database session.

    Built per request (or per scheduler tick); nothing here outlives the
    session, so every piece of state is read from and written to the store.
    """

    def __init__(
        self,
        session: AsyncSession,
        registry: PipelineRegistry = default_registry,
        clock: Clock = utc_now,
    ):
        self.session = session
        self.clock = clock
        self.store = TaskStore(session, clock)
        self.dlq = DLQManager(session, clock)
        self.pipelines = PipelineStateMachine(self.store, registry, clock)
        self.retry = RetryCoordinator(
            self.store,
            self.dlq,
            on_terminal=self.pipelines.on_task_terminal,
            clock=clock,
        )
        self.queue = DispatchQueue(
            self.store,
            self.retry,
            on_terminal=self.pipelines.on_task_terminal,
            clock=clock,
        )
