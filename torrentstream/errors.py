"""Error taxonomy shared by the orchestrator, the engines and the API routers."""


class StreamerError(Exception):
    """Base error. Routers turn it into an HTTP response with ``status_code``."""

    status_code = 500

    def __init__(self, message, diagnostics=None):
        super().__init__(message)
        self.message = message
        self.diagnostics = dict(diagnostics or {})

    def to_detail(self):
        if self.status_code >= 500:
            return {"error": self.message, "diagnostics": self.diagnostics}
        return self.message


class ValidationError(StreamerError):
    status_code = 400


class NotFoundError(StreamerError):
    status_code = 404


class SessionNotFoundError(NotFoundError):
    def __init__(self, session_id):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class FileNotFoundInTorrentError(NotFoundError):
    pass


class SelectionConflictError(StreamerError):
    status_code = 409


class AcquisitionError(StreamerError):
    pass


class ReadinessError(StreamerError):
    pass


class NoPeersError(ReadinessError):
    pass


class ReadinessTimeoutError(ReadinessError):
    pass


class PackagingError(StreamerError):
    pass
