"""GitHub Issues PM adapter over the GitHub REST API.

GitHub has no workflow states, only open and closed, so ``fetch_states``
returns that fixed pair and every other status collapses onto it.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from ..errors import PMAdapterError, ValidationError
from ..models import PMAdapterConfig, PMIssue, PMOverrides, PMState
from .base import BasePMAdapter

OPEN_STATE = PMState(id="open", name="Open", type="started")
CLOSED_STATE = PMState(id="closed", name="Closed", type="completed")

ISSUE_LABEL = "hodge"


class GitHubAdapter(BasePMAdapter):
    tool_name = "github"
    API_URL = "https://api.github.com"

    def __init__(
        self,
        config: PMAdapterConfig,
        overrides: Optional[PMOverrides] = None,
        base_path: Path | str | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        if not config.api_key or not isinstance(config.api_key, str):
            raise ValidationError("GitHub token is required and must be a string")
        repo = config.project_id or ""
        match = re.fullmatch(r"([\w.-]+)/([\w.-]+)", repo.strip())
        if not match:
            raise ValidationError("GitHub repository must be given as 'owner/repo'")

        super().__init__(config, overrides=overrides, base_path=base_path)
        self.token = config.api_key
        self.owner, self.repo = match.group(1), match.group(2)
        self.api_url = (config.base_url or self.API_URL).rstrip("/")
        self._transport = transport
        self.timeout = timeout

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Accept": "application/vnd.github+json",
        }
        try:
            async with httpx.AsyncClient(
                base_url=self.api_url,
                headers=headers,
                transport=self._transport,
                timeout=self.timeout,
            ) as client:
                response = await client.request(method, path, **kwargs)
                response.raise_for_status()
                return response.json() if response.content else None
        except httpx.HTTPError as e:
            raise PMAdapterError(f"GitHub request failed: {e}", tool=self.tool_name) from e
        except ValueError as e:
            raise PMAdapterError(f"GitHub returned invalid JSON: {e}", tool=self.tool_name) from e

    @property
    def _repo_path(self) -> str:
        return f"/repos/{self.owner}/{self.repo}"

    @staticmethod
    def parse_issue_number(issue_id: str) -> int:
        match = re.search(r"\d+", issue_id or "")
        if not match:
            raise ValidationError(f"Invalid GitHub issue ID: {issue_id}")
        return int(match.group(0))

    def _to_issue(self, data: Dict[str, Any]) -> PMIssue:
        closed = data.get("state") == "closed"
        return PMIssue(
            id=str(data["number"]),
            title=data["title"],
            description=data.get("body") or "",
            state=CLOSED_STATE if closed else OPEN_STATE,
            url=data.get("html_url"),
            labels=[label["name"] if isinstance(label, dict) else str(label) for label in data.get("labels", [])],
            assignee=(data.get("assignee") or {}).get("login"),
        )

    async def fetch_states(self, project_id: Optional[str] = None) -> List[PMState]:
        return [OPEN_STATE, CLOSED_STATE]

    async def get_issue(self, issue_id: str) -> PMIssue:
        number = self.parse_issue_number(issue_id)
        data = await self._request("GET", f"{self._repo_path}/issues/{number}")
        return self._to_issue(data)

    async def update_issue_state(self, issue_id: str, state_id: str) -> None:
        """Open or close an issue; started/completed are accepted as aliases."""
        number = self.parse_issue_number(issue_id)
        wanted = state_id.lower()
        if wanted in ("closed", "completed", "done", "canceled"):
            state = "closed"
        elif wanted in ("open", "started", "unstarted"):
            state = "open"
        else:
            raise ValidationError(f"GitHub issues can only be open or closed, got '{state_id}'")
        await self._request("PATCH", f"{self._repo_path}/issues/{number}", json={"state": state})

    async def search_issues(self, query: str) -> List[PMIssue]:
        q = f"repo:{self.owner}/{self.repo} is:issue {query}"
        data = await self._request("GET", "/search/issues", params={"q": q})
        return [self._to_issue(item) for item in (data or {}).get("items", [])]

    async def create_issue(self, title: str, description: Optional[str] = None) -> PMIssue:
        payload = {"title": title, "body": description or "", "labels": [ISSUE_LABEL]}
        data = await self._request("POST", f"{self._repo_path}/issues", json=payload)
        return self._to_issue(data)

    async def append_comment(self, issue_id: str, comment: str) -> None:
        if not comment or not isinstance(comment, str):
            raise ValidationError("Comment body is required")
        number = self.parse_issue_number(issue_id)
        await self._request("POST", f"{self._repo_path}/issues/{number}/comments", json={"body": comment})

    async def cancel_issue(self, issue_id: str) -> None:
        number = self.parse_issue_number(issue_id)
        await self._request(
            "PATCH",
            f"{self._repo_path}/issues/{number}",
            json={"state": "closed", "state_reason": "not_planned"},
        )

    def is_valid_issue_id(self, value: str) -> bool:
        return bool(re.fullmatch(r"#?\d+", value.strip()))
