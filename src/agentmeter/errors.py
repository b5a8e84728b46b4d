class AgentmeterError(Exception):
    """
    base class for all errors raised by the telemetry pipeline.
    """


class StoreError(AgentmeterError):
    """
    raised when the durable event store cannot be read or written.
    """


class CycleAlreadyOpenError(AgentmeterError):
    def __init__(self, session_id: "str") -> "None":
        super().__init__(f"session {session_id!r} already has an open cycle")
        self.session_id = session_id


class NoOpenCycleError(AgentmeterError):
    def __init__(self, session_id: "str") -> "None":
        super().__init__(f"session {session_id!r} has no open cycle")
        self.session_id = session_id


class CycleClosedError(AgentmeterError):
    def __init__(self, session_id: "str") -> "None":
        super().__init__(f"cycle for session {session_id!r} is already finalized")
        self.session_id = session_id
