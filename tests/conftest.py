from typing import Callable, Dict, List, Optional, Set, Tuple

import pytest

from org_user_sync import GrantResponse, RemoteGrantException, RemoteListError


class FakeOrgApi:
    """
    In-memory stand-in for the GitHub membership endpoints. Successful grants
    add the login to the organization, so a second sync sees the new state.
    """

    def __init__(
        self,
        members: Dict[str, List[str]],
        grant_statuses: Optional[Dict[str, int]] = None,
        transport_errors: Optional[Set[str]] = None,
        unknown_orgs: Optional[Set[str]] = None,
    ) -> None:
        self.members = {org: list(logins) for org, logins in members.items()}
        self.grant_statuses = grant_statuses or {}
        self.transport_errors = transport_errors or set()
        self.unknown_orgs = unknown_orgs or set()
        self.page_requests: List[Tuple[str, int, int]] = []
        self.grants: List[Tuple[str, str, str]] = []
        self.closed = False

    def list_members_page(self, org: str, page: int, per_page: int) -> List[str]:
        self.page_requests.append((org, page, per_page))
        if org in self.unknown_orgs:
            raise RemoteListError(f"Got 404 from '/orgs/{org}/members': b'Not Found'")
        start = (page - 1) * per_page
        return self.members.get(org, [])[start : start + per_page]

    def set_membership(self, org: str, login: str, role: str) -> GrantResponse:
        self.grants.append((org, login, role))
        if login in self.transport_errors:
            raise RemoteGrantException(f"Connection reset while adding {login}")
        status = self.grant_statuses.get(login, 200)
        if status == 200:
            self.members.setdefault(org, []).append(login)
            return GrantResponse(status, {"state": "pending", "role": role})
        return GrantResponse(status, {"message": "Validation Failed"})

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def make_org_api() -> Callable[..., FakeOrgApi]:
    return FakeOrgApi
