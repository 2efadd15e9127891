"""Host-level check that WhatsApp Web is reachable before driving a browser."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from ..models import OperationOutcome, OutcomeCode

LOGGER = logging.getLogger(__name__)


class ConnectivityChecker:
    """Issue a GET against ``url``; any HTTP answer counts as being online.

    Only transport errors (DNS, refused connections, timeouts) report the
    network as unavailable.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 5.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._url = url
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=True)

    @property
    def url(self) -> str:
        return self._url

    def check(self) -> OperationOutcome:
        try:
            response = self._client.get(self._url)
        except httpx.HTTPError as exc:
            LOGGER.warning("Connectivity check against %s failed: %s", self._url, exc)
            return OperationOutcome.network_unavailable(
                f"Internet connection unavailable: {exc}",
                code=OutcomeCode.NETWORK_ERROR,
            )
        LOGGER.debug("Connectivity check against %s answered %s", self._url, response.status_code)
        return OperationOutcome.success(True, message="Internet connectivity confirmed")

    def close(self) -> None:
        self._client.close()
