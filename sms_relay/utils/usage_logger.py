"""Chat completion usage logging with cost estimates.

Every completion the relay makes is recorded as one JSON line with:
- Token usage (prompt/completion/total)
- Cost estimate based on the pricing table below
- Model, timestamp, pseudonymous user id and conversation length

Message contents are never written here, only their sizes.

Usage:
    from sms_relay.utils.usage_logger import CompletionUsageLogger

    usage_logger = CompletionUsageLogger()
    usage_logger.log_completion(
        model="gpt-4o-mini",
        user_id=user_id,
        message_count=len(history),
        response=response,
    )
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from sms_relay.utils.logger import LoggerManager


# Pricing per 1M tokens; update when provider pricing changes
PRICING_PER_1M_TOKENS = {
    "gpt-4o": {"input": 2.50, "output": 10.00},
    "gpt-4o-mini": {"input": 0.15, "output": 0.60},
    "gpt-4-turbo": {"input": 10.00, "output": 30.00},
    "gpt-4": {"input": 30.00, "output": 60.00},
    "gpt-3.5-turbo": {"input": 0.50, "output": 1.50},
}

DEFAULT_USAGE_LOG_PATH = Path("logs/completion_usage.jsonl")


class CompletionUsageLogger:
    """Appends one JSON line per chat completion.

    Attributes:
        log_path: Path to the JSONL log file
        logger: Python logger for console summaries
    """

    def __init__(self, log_path: Optional[Path] = None):
        """Initialize usage logger.

        Args:
            log_path: Path to JSONL log file. Defaults to logs/completion_usage.jsonl
        """
        self.log_path = Path(log_path) if log_path else DEFAULT_USAGE_LOG_PATH
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.logger = LoggerManager.get_logger(__name__)

    @staticmethod
    def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
        """Calculate estimated cost in USD.

        Unknown models cost 0. Dated snapshots ("gpt-4o-2024-08-06") are
        priced by the longest matching family prefix.
        """
        family = max(
            (name for name in PRICING_PER_1M_TOKENS if model.startswith(name)),
            key=len,
            default=None,
        )
        pricing = PRICING_PER_1M_TOKENS.get(family, {"input": 0, "output": 0})
        cost = (
            (input_tokens * pricing["input"] / 1_000_000) +
            (output_tokens * pricing["output"] / 1_000_000)
        )
        return round(cost, 6)

    def log_completion(
        self,
        model: str,
        user_id: str,
        message_count: int,
        response: Any,
    ) -> Dict[str, Any]:
        """Record a completion.

        Args:
            model: Model name the request was made with
            user_id: Pseudonymous user id sent to the provider
            message_count: Number of messages in the request
            response: Chat completion response object (may lack usage)

        Returns:
            The log entry dict that was written
        """
        usage = getattr(response, "usage", None)
        input_tokens = (getattr(usage, "prompt_tokens", None) or 0) if usage else 0
        output_tokens = (getattr(usage, "completion_tokens", None) or 0) if usage else 0
        total_tokens = input_tokens + output_tokens
        cost_usd = self.calculate_cost(model, input_tokens, output_tokens)

        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "model": model,
            "user_id": user_id,
            "message_count": message_count,
            "usage": {
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "total_tokens": total_tokens,
            },
            "cost_usd": cost_usd,
        }

        try:
            with open(self.log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(log_entry, ensure_ascii=False) + "\n")
        except OSError as e:
            self.logger.warning(f"Failed to write usage log: {e}")

        self.logger.info(
            f"Completion: model={model} | "
            f"tokens={total_tokens} (in={input_tokens}, out={output_tokens}) | "
            f"cost=${cost_usd:.6f}"
        )
        return log_entry

    def get_user_costs(self, user_id: str) -> Dict[str, Any]:
        """Total tokens and cost logged for one pseudonymous user."""
        totals = {"user_id": user_id, "total_cost": 0.0, "total_tokens": 0, "call_count": 0}
        if not self.log_path.exists():
            return totals

        with open(self.log_path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if entry.get("user_id") == user_id:
                    totals["total_cost"] += entry.get("cost_usd", 0)
                    totals["total_tokens"] += entry.get("usage", {}).get("total_tokens", 0)
                    totals["call_count"] += 1

        totals["total_cost"] = round(totals["total_cost"], 6)
        return totals
