# Ultima Agent: Tool-Using Conversational Agent
# Copyright (C) 2026 Pankaj Varma
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""
Jira Tools for Ultima_Agent
Jira Cloud REST (v3) access via requests: projects, issue search, issue creation.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from ..core.config import Config

logger = logging.getLogger(__name__)

ACTIONS = ("list_projects", "search_issues", "create_issue")


class JiraAPIError(Exception):
    """Non-success answer from the Jira API"""


class JiraClient:
    def __init__(self, base_url: str = None, email: str = None, api_token: str = None, timeout: int = None):
        self.base_url = (base_url or Config.tools.JIRA_BASE_URL).rstrip("/")
        self.auth = (email or Config.tools.JIRA_EMAIL, api_token or Config.tools.JIRA_API_TOKEN)
        self.timeout = timeout or Config.tools.HTTP_TIMEOUT

    def _request(self, method: str, path: str, **kwargs) -> Any:
        response = requests.request(
            method,
            f"{self.base_url}/rest/api/3{path}",
            auth=self.auth,
            headers={"Accept": "application/json"},
            timeout=self.timeout,
            **kwargs
        )
        if response.status_code == 401:
            raise JiraAPIError("Jira authentication failed. Check JIRA_EMAIL and JIRA_API_TOKEN.")
        if response.status_code >= 400:
            raise JiraAPIError(f"Jira API error: {response.status_code} - {response.text[:200]}")
        return response.json()

    def list_projects(self) -> List[Dict[str, Any]]:
        data = self._request("GET", "/project/search")
        return [
            {"key": p.get("key"), "name": p.get("name"), "type": p.get("projectTypeKey")}
            for p in data.get("values", [])
        ]

    def search_issues(self, jql: str, limit: int = 10) -> Dict[str, Any]:
        data = self._request("GET", "/search", params={"jql": jql, "maxResults": limit})
        issues = []
        for issue in data.get("issues", []):
            fields = issue.get("fields") or {}
            issues.append({
                "key": issue.get("key"),
                "summary": fields.get("summary"),
                "status": (fields.get("status") or {}).get("name"),
                "assignee": (fields.get("assignee") or {}).get("displayName")
            })
        return {"issues": issues, "total": data.get("total", len(issues))}

    def create_issue(self, project_key: str, summary: str, issue_type: str = "Task",
                     description: str = "") -> Dict[str, Any]:
        payload = {
            "fields": {
                "project": {"key": project_key},
                "summary": summary,
                "issuetype": {"name": issue_type},
                "description": {
                    "type": "doc",
                    "version": 1,
                    "content": [{"type": "paragraph", "content": [{"type": "text", "text": description or summary}]}]
                }
            }
        }
        data = self._request("POST", "/issue", json=payload)
        return {"key": data.get("key"), "id": data.get("id"), "url": f"{self.base_url}/browse/{data.get('key')}"}


def build_jql(query: str) -> str:
    """Free text becomes a text search; anything containing an operator is passed through as JQL"""
    if any(op in query for op in ("=", "~", " ORDER BY ", " in (")):
        return query
    text = query.replace('"', '\\"')
    return f'text ~ "{text}" ORDER BY updated DESC'


def jira_tools_handler(params: Dict[str, Any], client: Optional[JiraClient] = None) -> Dict[str, Any]:
    """Dispatch a jira-tools invocation"""
    if client is None and not Config.tools.jira_configured():
        return {"success": False, "error": "Jira is not configured. Set JIRA_BASE_URL, JIRA_EMAIL and JIRA_API_TOKEN."}
    client = client or JiraClient()
    action = params.get("action") or "search_issues"

    if action not in ACTIONS:
        return {"success": False, "error": f"Unsupported Jira action: {action}"}

    try:
        if action == "list_projects":
            data = client.list_projects()
        elif action == "search_issues":
            data = client.search_issues(build_jql(params.get("jql") or params.get("query") or ""),
                                        int(params.get("limit") or 10))
        else:
            project_key = params.get("project_key") or params.get("projectKey")
            summary = params.get("summary") or params.get("query")
            if not project_key or not summary:
                return {"success": False, "error": "project_key and summary are required to create an issue"}
            data = client.create_issue(project_key, summary, params.get("issue_type") or "Task",
                                       params.get("description") or "")
    except (JiraAPIError, requests.exceptions.RequestException) as e:
        logger.warning(f"[Jira] {action} failed: {e}")
        return {"success": False, "error": str(e)}

    logger.info(f"[Jira] {action} succeeded")
    return {"success": True, "data": data}
