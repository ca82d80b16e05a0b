import requests
from typing import Optional


class ProgressionClient:
    """Simple REST client for the progression API."""

    def __init__(self, base_url: str = "http://localhost:8000", user_id: Optional[str] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.session = requests.Session()

    def _headers(self) -> dict:
        return {"X-User-Id": self.user_id} if self.user_id else {}

    def trigger_aggregation(self, week: Optional[str] = None, cron_secret: Optional[str] = None) -> dict:
        params = {"week": week} if week else {}
        if cron_secret is not None:
            resp = self.session.post(
                f"{self.base_url}/cron/aggregate-weekly-xp",
                params=params,
                headers={"Authorization": f"Bearer {cron_secret}"},
            )
        else:
            resp = self.session.get(
                f"{self.base_url}/admin/aggregate-weekly-xp",
                params=params,
                headers=self._headers(),
            )
        resp.raise_for_status()
        return resp.json()

    def complete_session(self, session_id: int) -> bool:
        resp = self.session.post(f"{self.base_url}/sessions/{session_id}/complete")
        resp.raise_for_status()
        return resp.json()["progression_updated"]

    def progression(self, user_id: str) -> dict:
        resp = self.session.get(f"{self.base_url}/users/{user_id}/progression")
        resp.raise_for_status()
        return resp.json()

    def prestige_status(self, user_id: str) -> dict:
        resp = self.session.get(f"{self.base_url}/users/{user_id}/prestige")
        resp.raise_for_status()
        return resp.json()

    def enter_prestige(self, user_id: str) -> dict:
        """Returns the response body; a denied prestige is not raised."""
        resp = self.session.post(
            f"{self.base_url}/users/{user_id}/prestige", headers=self._headers()
        )
        if resp.status_code == 403:
            detail = resp.json().get("detail")
            if isinstance(detail, dict):
                return detail
        resp.raise_for_status()
        return resp.json()

    def leaderboard(self, **params) -> dict:
        resp = self.session.get(
            f"{self.base_url}/leaderboard", params=params, headers=self._headers()
        )
        resp.raise_for_status()
        return resp.json()
