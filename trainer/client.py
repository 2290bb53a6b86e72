"""
Async client for the recommendation API.

Used by services that want predictions without linking the ML module.
"""

import logging
from typing import Iterable, Optional

import httpx

from ml.aggregator import Sample
from ml.recommendations import Prediction

logger = logging.getLogger(__name__)


class RecommenderClientError(Exception):
    """Raised when the recommendation API cannot be reached or rejects a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RecommenderClient:
    """Thin wrapper over ``POST /recommend``."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._http_client = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
        )

    async def close(self) -> None:
        await self._http_client.aclose()

    async def __aenter__(self) -> "RecommenderClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def recommend(
        self,
        given: Iterable[tuple[int, Sample]],
        predict: Iterable[int],
        min_prediction: float = 0.0,
    ) -> list[Prediction]:
        """
        Request predictions.

        Args:
            given: Samples of the vehicles the account has played
            predict: Tank ids to predict
            min_prediction: Drop predictions below this win rate

        Returns:
            Predictions sorted by descending win rate
        """
        payload = {
            "given": [
                {"tank_id": tank_id, "n_battles": sample.n_battles, "n_wins": sample.n_wins}
                for tank_id, sample in given
            ],
            "predict": list(predict),
            "min_prediction": min_prediction,
        }
        try:
            response = await self._http_client.post("/recommend", json=payload)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise RecommenderClientError(
                f"recommendation request rejected: {e.response.text}",
                status_code=e.response.status_code,
            ) from e
        except httpx.RequestError as e:
            raise RecommenderClientError(f"recommendation request failed: {e}") from e

        predictions = [
            Prediction(entry["tank_id"], entry["p"])
            for entry in response.json()["predictions"]
        ]
        logger.debug(f"Received {len(predictions)} predictions")
        return predictions
