class PipelineError(Exception):
    """Aborts the current job attempt; the dispatcher retries it per policy."""


class DeliveryError(PipelineError):
    def __init__(self, address: str, error: str | None, code: str | None = None):
        self.address = address
        self.error = error
        self.code = code
        super().__init__(f"Send to {address} failed: {error} ({code})")
