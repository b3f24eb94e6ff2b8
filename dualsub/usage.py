"""Token usage accounting for generative model calls."""

import logging
from dataclasses import dataclass
from typing import Dict

logger = logging.getLogger(__name__)


@dataclass
class ModelUsage:
    calls: int = 0
    prompt_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class UsageReporter:
    """Accumulates token counts per model over one pipeline run."""

    def __init__(self):
        self._usage: Dict[str, ModelUsage] = {}

    def record(self, model: str, prompt_tokens: int = 0, output_tokens: int = 0, total_tokens: int = 0) -> None:
        usage = self._usage.setdefault(model, ModelUsage())
        usage.calls += 1
        usage.prompt_tokens += prompt_tokens or 0
        usage.output_tokens += output_tokens or 0
        usage.total_tokens += total_tokens or (prompt_tokens or 0) + (output_tokens or 0)

    def reset(self) -> None:
        self._usage.clear()

    def log_summary(self) -> None:
        if not self._usage:
            logger.info("No model calls were made.")
            return
        logger.info("Token usage by model:")
        for model, usage in sorted(self._usage.items()):
            logger.info(
                f"  {model}: {usage.calls} calls, {usage.prompt_tokens} prompt + "
                f"{usage.output_tokens} output = {usage.total_tokens} tokens"
            )
