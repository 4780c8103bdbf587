"""
Originality.ai-style content detector.

Implements the ContentDetector contract with two HTTP scans, one for
AI likelihood and one for plagiarism. Transport errors are retried; any
failure that survives the retries is raised as DetectionFailure.
"""

import logging
import os
from typing import Any, Dict, List, Optional

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..core.collaborators import DetectionScan
from ..core.errors import DetectionFailure

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.originality.ai/api/v1"
API_KEY_ENV = "ORIGINALITY_API_KEY"


def _percent(value: Any) -> float:
    """Normalize a score to 0-100; float scores in [0, 1] are fractions and are scaled up."""
    score = float(value)
    if isinstance(value, float) and 0 <= score <= 1:
        score *= 100
    return round(min(max(score, 0.0), 100.0), 1)


class OriginalityDetector:
    """Content detector over the Originality.ai scan API.

    Args:
        api_key: API key (defaults to the ORIGINALITY_API_KEY environment variable)
        base_url: API root
        timeout: Per-request timeout in seconds
        max_attempts: Attempts per scan on transport errors
        client: Pre-built httpx client (a new one is created otherwise)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        max_attempts: int = 3,
        client: Optional[httpx.Client] = None
    ):
        self.api_key = api_key or os.environ.get(API_KEY_ENV)
        if not self.api_key:
            raise ValueError(f"api_key is required (or set {API_KEY_ENV})")
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.client = client or httpx.Client(timeout=timeout)

    def close(self) -> None:
        self.client.close()

    def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=1, min=1, max=10),
            retry=retry_if_exception_type(httpx.TransportError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        headers = {"X-OAI-API-KEY": self.api_key, "Content-Type": "application/json"}
        for attempt in retrying:
            with attempt:
                response = self.client.post(f"{self.base_url}{endpoint}", json=payload, headers=headers)
                response.raise_for_status()
                data = response.json()
        if not data.get("success", True):
            raise DetectionFailure(f"{endpoint} returned an unsuccessful response")
        return data

    def scan(self, text: str) -> DetectionScan:
        """Scan text for AI likelihood and plagiarism.

        Raises:
            DetectionFailure: If either scan fails or returns malformed data
        """
        try:
            ai = self._post("/scan/ai", {"content": text, "aiModelVersion": "latest", "storeScan": False})
            plagiarism = self._post("/scan/plagiarism", {"content": text, "storeScan": False, "webhookUrl": None})
            ai_score = _percent(ai["score"]["ai"])
            plagiarism_score = _percent(plagiarism["score"]["plagiarism"])
        except httpx.HTTPStatusError as e:
            logger.error("Originality API error: %s - %s", e.response.status_code, e.response.text)
            raise DetectionFailure(f"detector returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise DetectionFailure(f"detector unreachable: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise DetectionFailure(f"malformed detector response: {e}") from e

        original = ai["score"].get("original")
        originality = _percent(original) if original is not None else round(100.0 - plagiarism_score, 1)

        return DetectionScan(
            originality_score=originality,
            ai_likelihood_score=ai_score,
            plagiarism_score=plagiarism_score,
            flagged_sections=self._flagged_sections(ai) + self._flagged_sections(plagiarism)
        )

    @staticmethod
    def _flagged_sections(response: Dict[str, Any]) -> List[str]:
        return [
            highlight["text"]
            for highlight in response.get("highlights") or []
            if highlight.get("text")
        ]
