class QueueError(Exception):
    """Base exception for job queue errors."""
    pass

class ConfigurationError(QueueError):
    pass

class StoreUnavailable(QueueError):
    def __init__(self, detail):
        super().__init__(f"Job store unavailable: {detail}")

class JobNotFound(QueueError):
    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")

class InvalidState(QueueError):
    def __init__(self, job_id, current_state, operation):
        self.job_id = job_id
        self.current_state = current_state
        super().__init__(f"Cannot {operation} job {job_id} while it is {current_state}")

class PayloadValidationError(QueueError):
    pass

class UnknownJobType(QueueError):
    def __init__(self, job_type):
        self.job_type = job_type
        super().__init__(f"No handler registered for job type '{job_type}'")

class HandlerError(QueueError):
    """Raised or recorded when a handler attempt fails."""
    pass

class HandlerTimeout(HandlerError):
    def __init__(self, timeout):
        self.timeout = timeout
        super().__init__(f"Handler exceeded execution timeout of {timeout}s")

class PoisonPayload(HandlerError):
    """Payload can never be processed; retrying will not help."""
    pass

class LeaseLost(QueueError):
    """The attempt's lease token no longer matches the stored job."""
    def __init__(self, job_id):
        self.job_id = job_id
        super().__init__(f"Lease for job {job_id} is no longer held")
