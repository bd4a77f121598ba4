from typing import Annotated

from fastapi import Depends, Request

from jobqueue.registry import QueueRegistry

def get_registry(request: Request) -> QueueRegistry:
    return request.app.state.registry

# Dependency for the application's queue registry
Registry = Annotated[QueueRegistry, Depends(get_registry)]
