from fastapi import Request

from flipforge.runtime import PipelineRuntime


def get_runtime(request: Request) -> PipelineRuntime:
    return request.app.state.runtime
