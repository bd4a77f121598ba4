import inspect
import json
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pydantic import BaseModel, ValidationError

from jobqueue.domain.errors import ConfigurationError, PayloadValidationError, PoisonPayload, UnknownJobType

# handler(payload, progress) -> result, sync or async
HandlerFn = Callable[[Any, Callable[[int], None]], Any]

@dataclass(frozen=True)
class Handler:
    job_type: str
    fn: HandlerFn
    schema: Optional[type[BaseModel]] = None

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.fn)

    def parse(self, payload: Any) -> Any:
        """Payload as the handler receives it: a schema instance when one is registered."""
        if self.schema is None:
            return payload
        try:
            return self.schema.model_validate(payload)
        except ValidationError as e:
            raise PoisonPayload(f"Payload rejected by {self.schema.__name__}: {e}") from e

class HandlerRegistry:
    """Maps job types of one queue to the handler that processes them."""

    def __init__(self):
        self._handlers: dict[str, Handler] = {}

    def register(self, job_type: str, fn: HandlerFn, schema: Optional[type[BaseModel]] = None) -> Handler:
        if not job_type:
            raise ConfigurationError("job_type must be a non-empty string")
        if not callable(fn):
            raise ConfigurationError(f"Handler for '{job_type}' is not callable")
        if job_type in self._handlers:
            raise ConfigurationError(f"A handler for '{job_type}' is already registered")

        handler = Handler(job_type=job_type, fn=fn, schema=schema)
        self._handlers[job_type] = handler
        return handler

    def get(self, job_type: str) -> Handler:
        try:
            return self._handlers[job_type]
        except KeyError:
            raise UnknownJobType(job_type) from None

    def job_types(self) -> frozenset[str]:
        return frozenset(self._handlers)

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)

    def prepare_payload(self, job_type: str, payload: Any) -> Any:
        """
        Validates a payload at enqueue time and returns its JSON-ready form.
        Types without a local handler are only checked for serializability,
        since another process may own them.
        """
        handler = self._handlers.get(job_type)

        if handler is not None and handler.schema is not None:
            try:
                model = handler.schema.model_validate(
                    payload.model_dump() if isinstance(payload, BaseModel) else payload
                )
            except ValidationError as e:
                raise PayloadValidationError(f"Invalid payload for '{job_type}': {e}") from e
            return model.model_dump(mode="json")

        if isinstance(payload, BaseModel):
            return payload.model_dump(mode="json")

        return ensure_json(payload, f"payload for '{job_type}'")

def ensure_json(value: Any, what: str) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError) as e:
        raise PayloadValidationError(f"{what} is not JSON serializable: {e}") from e
    return value
