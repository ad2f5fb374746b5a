"""Linear PM adapter over the Linear GraphQL API."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from ..errors import PMAdapterError, ValidationError
from ..models import PMAdapterConfig, PMIssue, PMOverrides, PMState
from .base import BasePMAdapter

_ISSUE_FIELDS = """
    id
    identifier
    title
    description
    url
    state { id name type }
    assignee { name }
    labels { nodes { name } }
"""

# Linear state type -> common state type
LINEAR_TYPE_MAP = {
    "triage": "unstarted",
    "backlog": "unstarted",
    "unstarted": "unstarted",
    "started": "started",
    "completed": "completed",
    "canceled": "canceled",
}


class LinearAdapter(BasePMAdapter):
    """Linear issues, addressed by identifier (``HOD-123``) where available."""

    tool_name = "linear"
    API_URL = "https://api.linear.app/graphql"

    def __init__(
        self,
        config: PMAdapterConfig,
        overrides: Optional[PMOverrides] = None,
        base_path: Path | str | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        if not config.api_key or not isinstance(config.api_key, str):
            raise ValidationError("Linear API key is required and must be a string")
        if not config.team_id or not isinstance(config.team_id, str):
            raise ValidationError("Linear team ID is required and must be a string")
        if len(config.api_key) < 20:
            raise ValidationError("Invalid Linear API key format")

        super().__init__(config, overrides=overrides, base_path=base_path)
        self.api_key = config.api_key
        self.team_id = config.team_id
        self.api_url = config.base_url or self.API_URL
        self._transport = transport
        self.timeout = timeout

    async def _graphql(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Execute a GraphQL query and return its ``data`` payload."""
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=self.timeout) as client:
                response = await client.post(
                    self.api_url,
                    headers={
                        "Authorization": self.api_key,
                        "Content-Type": "application/json",
                    },
                    json={"query": query, "variables": variables or {}},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise PMAdapterError(f"Linear request failed: {e}", tool=self.tool_name) from e
        except ValueError as e:
            raise PMAdapterError(f"Linear returned invalid JSON: {e}", tool=self.tool_name) from e

        if data.get("errors"):
            raise PMAdapterError(f"Linear API error: {data['errors']}", tool=self.tool_name)
        return data.get("data") or {}

    def _to_state(self, node: Dict[str, Any]) -> PMState:
        return PMState(
            id=node["id"],
            name=node["name"],
            type=LINEAR_TYPE_MAP.get(node.get("type", ""), "unknown"),
            color=node.get("color"),
            description=node.get("description"),
        )

    def _to_issue(self, node: Dict[str, Any]) -> PMIssue:
        state = node.get("state")
        if not state:
            raise PMAdapterError(f"Issue {node.get('identifier') or node.get('id')} has no state", tool=self.tool_name)
        assignee = node.get("assignee") or {}
        labels = (node.get("labels") or {}).get("nodes", [])
        return PMIssue(
            id=node.get("identifier") or node["id"],
            title=node["title"],
            description=node.get("description"),
            state=self._to_state(state),
            url=node.get("url"),
            labels=[label["name"] for label in labels],
            assignee=assignee.get("name"),
        )

    async def fetch_states(self, project_id: Optional[str] = None) -> List[PMState]:
        query = """
        query TeamStates($teamId: String!) {
            team(id: $teamId) {
                states { nodes { id name type color description } }
            }
        }
        """
        result = await self._graphql(query, {"teamId": self.team_id})
        nodes = ((result.get("team") or {}).get("states") or {}).get("nodes", [])
        return [self._to_state(node) for node in nodes]

    async def get_issue(self, issue_id: str) -> PMIssue:
        if not issue_id or not isinstance(issue_id, str):
            raise ValidationError("Invalid issue ID provided")
        query = f"""
        query Issue($id: String!) {{
            issue(id: $id) {{ {_ISSUE_FIELDS} }}
        }}
        """
        result = await self._graphql(query, {"id": issue_id})
        node = result.get("issue")
        if not node:
            raise PMAdapterError(f"Linear issue {issue_id} not found", tool=self.tool_name)
        return self._to_issue(node)

    async def update_issue_state(self, issue_id: str, state_id: str) -> None:
        if not issue_id or not isinstance(issue_id, str):
            raise ValidationError("Invalid issue ID provided")
        if not state_id or not isinstance(state_id, str):
            raise ValidationError("Invalid state ID provided")
        query = """
        mutation UpdateIssue($id: String!, $input: IssueUpdateInput!) {
            issueUpdate(id: $id, input: $input) { success }
        }
        """
        result = await self._graphql(query, {"id": issue_id, "input": {"stateId": state_id}})
        if not (result.get("issueUpdate") or {}).get("success"):
            raise PMAdapterError(f"Failed to update Linear issue {issue_id}", tool=self.tool_name)

    async def search_issues(self, query: str) -> List[PMIssue]:
        gql = f"""
        query SearchIssues($filter: IssueFilter) {{
            issues(filter: $filter, first: 50) {{
                nodes {{ {_ISSUE_FIELDS} }}
            }}
        }}
        """
        issue_filter = {
            "team": {"id": {"eq": self.team_id}},
            "or": [
                {"title": {"containsIgnoreCase": query}},
                {"description": {"containsIgnoreCase": query}},
            ],
        }
        result = await self._graphql(gql, {"filter": issue_filter})
        nodes = (result.get("issues") or {}).get("nodes", [])
        return [self._to_issue(node) for node in nodes if node.get("state")]

    async def create_issue(self, title: str, description: Optional[str] = None) -> PMIssue:
        query = f"""
        mutation CreateIssue($input: IssueCreateInput!) {{
            issueCreate(input: $input) {{
                success
                issue {{ {_ISSUE_FIELDS} }}
            }}
        }}
        """
        variables = {"input": {"teamId": self.team_id, "title": title, "description": description or ""}}
        result = await self._graphql(query, variables)
        payload = result.get("issueCreate") or {}
        if not payload.get("success") or not payload.get("issue"):
            raise PMAdapterError(f"Failed to create Linear issue '{title}'", tool=self.tool_name)
        return self._to_issue(payload["issue"])

    async def append_comment(self, issue_id: str, comment: str) -> None:
        if not issue_id or not isinstance(issue_id, str):
            raise ValidationError("Invalid issue ID provided")
        if not comment or not isinstance(comment, str):
            raise ValidationError("Comment body is required")
        query = """
        mutation CreateComment($input: CommentCreateInput!) {
            commentCreate(input: $input) { success }
        }
        """
        result = await self._graphql(query, {"input": {"issueId": issue_id, "body": comment}})
        if not (result.get("commentCreate") or {}).get("success"):
            raise PMAdapterError(f"Failed to add comment to Linear issue {issue_id}", tool=self.tool_name)

    def is_valid_issue_id(self, value: str) -> bool:
        return bool(re.fullmatch(r"[A-Z]+-\d+", value.strip()))
