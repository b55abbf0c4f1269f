"""Interface for the downstream consumer of output envelopes."""

from typing import Any, Dict, Protocol


class IOutputSink(Protocol):
    """Receives one envelope per completed execution.

    The engine hands envelopes over without awaiting the outcome, so a slow
    or failing sink never affects execution state.
    """

    async def write(self, envelope: Dict[str, Any]) -> None:
        """Persist or forward an envelope.

        Args:
            envelope: Mapping with task_id, task_name, executed_at,
                output_format, output_schema, destination, data and metadata
        """
        ...
