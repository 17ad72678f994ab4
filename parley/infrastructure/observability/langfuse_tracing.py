from typing import Dict, Any, Optional
import structlog
from langfuse import Langfuse

from parley.infrastructure.config.settings import TracingConfig

logger = structlog.get_logger(__name__)


class ResponseTrace:
    """One Langfuse trace covering a single generated response"""

    def __init__(self, trace: Any):
        self._trace = trace

    def generation(
        self,
        model: str,
        prompt: Any,
        completion: str,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Attach the completion call to the trace"""

        try:
            self._trace.generation(
                name="completion",
                model=model,
                input=prompt,
                output=completion,
                usage={"input": prompt_tokens, "output": completion_tokens},
                metadata=metadata or {}
            )
        except Exception as e:
            logger.warning("trace_generation_failed", error=str(e))

    def finish(self, output: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        try:
            self._trace.update(output=output, metadata=metadata or {})
        except Exception as e:
            logger.warning("trace_update_failed", error=str(e))


class ResponseTracer:
    """Langfuse tracing for the response pipeline; tracing failures never reach callers"""

    def __init__(self, config: TracingConfig, client: Optional[Langfuse] = None):
        self.config = config
        self.langfuse = client or Langfuse(
            public_key=config.public_key,
            secret_key=config.secret_key,
            host=config.host
        )

    def start_trace(
        self,
        channel_id: str,
        user_id: str,
        message: str,
        thread_id: Optional[str] = None
    ) -> Optional[ResponseTrace]:
        try:
            trace = self.langfuse.trace(
                name="generate_response",
                user_id=user_id,
                session_id=f"{channel_id}:{thread_id or 'main'}",
                input=message,
                tags=["response"],
                metadata={"channel_id": channel_id, "thread_id": thread_id}
            )
        except Exception as e:
            logger.warning("trace_start_failed", channel_id=channel_id, error=str(e))
            return None
        return ResponseTrace(trace)

    def flush(self) -> None:
        try:
            self.langfuse.flush()
        except Exception as e:
            logger.warning("trace_flush_failed", error=str(e))
