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
GitHub Tools for Ultima_Agent
Repository introspection over the GitHub REST API (requests).
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from ..core.config import Config

logger = logging.getLogger(__name__)

ACTIONS = ("get_repository", "get_commits", "list_files")


class GitHubAPIError(Exception):
    """Non-success answer from the GitHub API"""


class GitHubClient:
    """Minimal GitHub REST client"""

    def __init__(self, base_url: str = None, token: str = None, timeout: int = None):
        self.base_url = (base_url or Config.tools.GITHUB_API_URL).rstrip("/")
        self.token = token if token is not None else Config.tools.GITHUB_TOKEN
        self.timeout = timeout or Config.tools.HTTP_TIMEOUT

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "Ultima-Agent"
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = requests.get(
            f"{self.base_url}{path}", headers=self._headers(), params=params, timeout=self.timeout
        )
        if response.status_code == 404:
            raise GitHubAPIError("Repository not found. It may be private or may not exist.")
        if response.status_code == 403:
            raise GitHubAPIError("GitHub API rate limit exceeded or access forbidden. Configure GITHUB_TOKEN.")
        if response.status_code != 200:
            raise GitHubAPIError(f"GitHub API error: {response.status_code} - {response.text[:200]}")
        return response.json()

    def get_repository(self, owner: str, repository: str) -> Dict[str, Any]:
        data = self._get(f"/repos/{owner}/{repository}")
        license_info = data.get("license") or {}
        return {
            "full_name": data.get("full_name", f"{owner}/{repository}"),
            "description": data.get("description"),
            "language": data.get("language"),
            "stargazers_count": data.get("stargazers_count", 0),
            "forks_count": data.get("forks_count", 0),
            "open_issues_count": data.get("open_issues_count", 0),
            "created_at": data.get("created_at"),
            "updated_at": data.get("updated_at"),
            "topics": data.get("topics") or [],
            "license": license_info.get("name"),
            "default_branch": data.get("default_branch"),
            "html_url": data.get("html_url"),
            "private": data.get("private", False)
        }

    def get_commits(self, owner: str, repository: str, limit: int = 10) -> List[Dict[str, Any]]:
        data = self._get(f"/repos/{owner}/{repository}/commits", params={"per_page": limit})
        commits = []
        for item in data:
            commit = item.get("commit") or {}
            author = commit.get("author") or {}
            commits.append({
                "sha": (item.get("sha") or "")[:7],
                "message": (commit.get("message") or "").split("\n")[0],
                "author": author.get("name"),
                "date": author.get("date"),
                "url": item.get("html_url")
            })
        return commits

    def list_files(self, owner: str, repository: str, path: str = "") -> List[Dict[str, Any]]:
        data = self._get(f"/repos/{owner}/{repository}/contents/{path}".rstrip("/"))
        if isinstance(data, dict):
            data = [data]
        return [
            {"name": item.get("name"), "path": item.get("path"), "type": item.get("type"), "size": item.get("size")}
            for item in data
        ]


def github_tools_handler(params: Dict[str, Any], client: Optional[GitHubClient] = None) -> Dict[str, Any]:
    """Dispatch a github-tools invocation to the REST client"""
    client = client or GitHubClient()
    action = params.get("action") or "get_repository"
    owner = params.get("owner")
    repository = params.get("repository") or params.get("repo")

    if action not in ACTIONS:
        return {"success": False, "error": f"Unsupported GitHub action: {action}"}
    if not owner or not repository:
        return {"success": False, "error": "owner and repository are required for GitHub actions"}

    try:
        if action == "get_repository":
            data = client.get_repository(owner, repository)
        elif action == "get_commits":
            data = client.get_commits(owner, repository, int(params.get("limit") or 10))
        else:
            data = client.list_files(owner, repository, params.get("path") or "")
    except (GitHubAPIError, requests.exceptions.RequestException) as e:
        logger.warning(f"[GitHub] {action} {owner}/{repository} failed: {e}")
        return {"success": False, "error": str(e)}

    logger.info(f"[GitHub] {action} {owner}/{repository} succeeded")
    return {"success": True, "data": data}
