"""Thin HTTP client for the activity log API."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

import httpx

from activitylog.chain.verify import VerificationResult
from activitylog.storage.query import ActivityPage


class ActivityLogClient:
    """Calls the activity log API on behalf of a caller holding *permissions*.

    Pass either a ``base_url`` or a ready ``httpx.Client`` (e.g. a
    ``fastapi.testclient.TestClient``).
    """

    def __init__(
        self,
        base_url: str | None = None,
        permissions: Iterable[str] = (),
        http: httpx.Client | None = None,
        timeout: float = 30.0,
    ) -> None:
        if http is None:
            if base_url is None:
                raise ValueError("either base_url or http is required")
            http = httpx.Client(base_url=base_url, timeout=timeout)
        self._http = http
        self._headers = {"X-Permissions": ",".join(permissions)}

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "ActivityLogClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def list(self, limit: int = 50, before: int | None = None, **filters: Any) -> ActivityPage:
        params: Dict[str, Any] = {k: v for k, v in filters.items() if v is not None}
        params["limit"] = limit
        if before is not None:
            params["before"] = before
        resp = self._http.get("/activities", params=params, headers=self._headers)
        resp.raise_for_status()
        return ActivityPage.model_validate(resp.json())

    def filters(self) -> Dict[str, Any]:
        resp = self._http.get("/activities/filters", headers=self._headers)
        resp.raise_for_status()
        return resp.json()

    def verify(self, mode: str = "quick", limit: Optional[int] = None, start: Optional[int] = None) -> VerificationResult:
        body: Dict[str, Any] = {"mode": mode}
        if limit is not None:
            body["limit"] = limit
        if start is not None:
            body["start"] = start
        resp = self._http.post("/activities/verify", json=body, headers=self._headers)
        resp.raise_for_status()
        return VerificationResult.model_validate(resp.json())
