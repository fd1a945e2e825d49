"""Provider trace file.

Streaming diagnostics that are too chatty for the ``logging`` tree
(per-stream counts, tool-call emissions, retries) go to a plain-text file:

    from llmbridge.trace import provider_trace

    provider_trace("litellm", "STREAM_END frames=12")

``LLMBRIDGE_PROVIDER_TRACE`` names the file. An empty value disables
tracing; unset falls back to provider_trace.log in the temp dir.
"""

import os
import tempfile
from datetime import datetime
from typing import Optional

ENV_PROVIDER_TRACE = "LLMBRIDGE_PROVIDER_TRACE"


def _trace_path() -> Optional[str]:
    value = os.environ.get(ENV_PROVIDER_TRACE)
    if value == "":
        return None
    return value or os.path.join(tempfile.gettempdir(), "provider_trace.log")


def provider_trace(component: str, msg: str) -> None:
    """Append one timestamped line to the trace file. Never raises."""
    path = _trace_path()
    if not path:
        return
    try:
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        with open(path, "a", encoding="utf-8") as f:
            ts = datetime.now().strftime("%H:%M:%S.%f")[:-3]
            f.write(f"[{ts}] [{component}] {msg}\n")
    except OSError:
        pass
