class OrchestratorError(Exception):
    """Base exception for orchestrator errors."""
    pass

class ConflictError(OrchestratorError):
    """Lost a compare-and-set race; re-read and retry."""
    def __init__(self, task_id, expected_status):
        super().__init__(f"Task {task_id} is no longer {expected_status}")
        self.task_id = task_id
        self.expected_status = expected_status

class TaskNotFoundError(OrchestratorError):
    def __init__(self, task_id):
        super().__init__(f"Task {task_id} not found")

class PipelineNotFoundError(OrchestratorError):
    def __init__(self, name):
        super().__init__(f"Pipeline {name!r} is not registered")

class PipelineRunNotFoundError(OrchestratorError):
    def __init__(self, run_id):
        super().__init__(f"Pipeline run {run_id} not found")

class PipelineDefinitionError(OrchestratorError):
    pass

class DLQItemNotFoundError(OrchestratorError):
    def __init__(self, item_id):
        super().__init__(f"DLQ item {item_id} not found")

class NotReplayableError(OrchestratorError):
    def __init__(self, item_id):
        super().__init__(f"DLQ item {item_id} is not replayable")

class InvalidTaskStateError(OrchestratorError):
    def __init__(self, current_status, target_status):
        super().__init__(f"Cannot transition from {current_status} to {target_status}")

class EmptyQueueError(OrchestratorError):
    """No ready tasks. Not fatal: the caller should back off."""
    pass

class LeaseError(OrchestratorError):
    pass

class LeaseLostError(LeaseError):
    pass

class NotOwnerError(LeaseError):
    pass
