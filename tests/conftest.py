"""Shared test fixtures.

FakeGitHubClient stands in for github_client.GitHubClient with in-memory
organizations, members, profiles and license entries. Any call can be made
to fail by listing its key in ``failures``.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from github_client import GitHubAPIError


def account(login: str) -> Dict[str, Any]:
    return {
        "login": login,
        "html_url": f"https://github.com/{login}",
        "avatar_url": f"https://avatars.githubusercontent.com/{login}",
    }


class FakeGitHubClient:
    def __init__(self) -> None:
        self.organizations: List[Dict[str, Any]] = []
        self.members: Dict[str, List[str]] = {}
        self.collaborators: Dict[str, List[str]] = {}
        self.roles: Dict[tuple, str] = {}
        self.profiles: Dict[str, Dict[str, Any]] = {}
        self.licenses: List[Dict[str, Any]] = []
        self.failures: set = set()
        self.calls: List[tuple] = []

    def add_org(
        self,
        login: str,
        members: Optional[List[str]] = None,
        collaborators: Optional[List[str]] = None,
        **extra: Any,
    ) -> None:
        org = {
            "login": login,
            "name": extra.get("name"),
            "description": extra.get("description"),
            "url": f"https://github.com/{login}",
        }
        self.organizations.append(org)
        self.members[login] = list(members or [])
        self.collaborators[login] = list(collaborators or [])
        for username in self.members[login]:
            self.roles.setdefault((login, username), "member")
        for username in self.members[login] + self.collaborators[login]:
            self.profiles.setdefault(username, {"login": username, "name": None})

    def _check(self, key: Any) -> None:
        self.calls.append(key if isinstance(key, tuple) else (key,))
        if key in self.failures:
            raise GitHubAPIError(f"simulated failure: {key}", status_code=403)

    def list_organizations(self, enterprise: Optional[str] = None) -> List[Dict[str, Any]]:
        self._check("orgs")
        return list(self.organizations)

    def list_members(self, org: str) -> List[Dict[str, Any]]:
        self._check(("members", org))
        return [account(login) for login in self.members.get(org, [])]

    def list_outside_collaborators(self, org: str) -> List[Dict[str, Any]]:
        self._check(("collaborators", org))
        return [account(login) for login in self.collaborators.get(org, [])]

    def get_membership(self, org: str, username: str) -> Dict[str, Any]:
        self._check(("membership", org, username))
        return {"role": self.roles[(org, username)], "state": "active"}

    def get_user(self, username: str) -> Dict[str, Any]:
        self._check(("user", username))
        return self.profiles[username]

    def list_consumed_licenses(self, enterprise: str) -> List[Dict[str, Any]]:
        self._check("licenses")
        return list(self.licenses)


@pytest.fixture
def fake_client() -> FakeGitHubClient:
    return FakeGitHubClient()


@pytest.fixture
def no_pause():
    return lambda: None
