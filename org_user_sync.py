#!/usr/bin/env python3

# Copyright 2022 Chorus One

# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# A copy of the License has been included in the root of the repository.

"""
GitHub Organization Member Sync

Compare the members of a source GitHub organization against the members of a
target organization, and add every user who is a member of the source but not
of the target to the target, with the normal "member" role. Members of the
target who are not in the source are left alone, this tool never removes
anyone.

USAGE

    ./org_user_sync.py --source old-org --target new-org

OPTIONS

    -h, --help              Show this help message.
    -s, --source <org>      Source organization (pulls users from this org).
    -t, --target <org>      Target organization (pushes users to this org).
    -u, --url <api_url>     GitHub API url, defaults to https://api.github.com.
                            For GitHub Enterprise, use https://<host>/api/v3.
    -v, --verbose <0-2>     Verbosity level. 0 prints only the final summary,
                            1 adds member counts and a line per added user,
                            2 adds the full member lists and raw responses.
    -c, --config <file>     Read defaults for the options above from a toml
                            file. Options on the command line take precedence.

ENVIRONMENT

Requires GH_USER_SYNC_TOKEN to be set in the environment. This must contain a
personal access token of an owner of the target organization, with the
"admin:org" permission, so it can both list members and add new ones. The
token is not validated up front, when it is missing or lacks permissions, the
GitHub API rejects the requests and the error is reported.

You can generate a new token at https://github.com/settings/tokens.

CONFIGURATION

The optional config file is a toml file with a single [sync] table. All keys
are optional.

    [sync]
    source = "acme-legacy"
    target = "acme"
    url = "https://api.github.com"
    verbose = 1

    # Number of members to request per page when listing, at most 100.
    page_size = 100

EXIT STATUS

0 when the sync ran to completion, even if some users could not be added.
1 on invalid usage, an invalid config file, or when the GitHub API could not
be reached or refused to list the members.
"""

from __future__ import annotations

import argparse
import os
import sys
import tomli
import requests

from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    NamedTuple,
    Optional,
    Protocol,
)
from enum import Enum


DEFAULT_API_URL = "https://api.github.com"

# GitHub does not return more than 100 items per page, regardless of what we
# ask for.
MAX_PAGE_SIZE = 100

TOKEN_ENV_VAR = "GH_USER_SYNC_TOKEN"

# Applies to every request. There is no retry when it expires.
TIMEOUT_SECONDS = 15


class SyncError(Exception):
    """Base class for the errors that abort a sync run."""


class RemoteListError(SyncError):
    """A page of the organization member listing could not be retrieved."""


class RemoteGrantException(SyncError):
    """
    A membership grant request failed at the transport level, so there is no
    response status to classify. Unlike a grant that returns a non-success
    status, this aborts the run.
    """


class ConfigError(SyncError):
    pass


class OrganizationRole(Enum):
    ADMIN = "admin"
    MEMBER = "member"


class GrantOutcome(Enum):
    SUCCESS = "success"
    FAILED = "failed"


class GrantResponse(NamedTuple):
    status: int
    body: Any

    def is_success(self) -> bool:
        # GitHub returns 200 both when the user became an active member and
        # when an invitation is now pending. Anything else, including other
        # 2xx codes, we do not know how to interpret, so count it as a failure.
        return self.status == 200


class ProgressEvent(NamedTuple):
    # 1-based position of the login in the list of missing members.
    index: int
    total: int
    login: str
    outcome: GrantOutcome


class SyncResult(NamedTuple):
    added: int
    failed: int

    def record(self, outcome: GrantOutcome) -> SyncResult:
        if outcome == GrantOutcome.SUCCESS:
            return self._replace(added=self.added + 1)
        return self._replace(failed=self.failed + 1)


class SyncConfig(NamedTuple):
    source: Optional[str]
    target: Optional[str]
    api_url: str
    verbose: int
    page_size: int

    @staticmethod
    def default() -> SyncConfig:
        return SyncConfig(
            source=None,
            target=None,
            api_url=DEFAULT_API_URL,
            verbose=0,
            page_size=MAX_PAGE_SIZE,
        )

    @staticmethod
    def from_toml_dict(data: Dict[str, Any]) -> SyncConfig:
        sync: Dict[str, Any] = data.get("sync", {})
        if not isinstance(sync, dict):
            raise ConfigError(f"Expected [sync] to be a table, not {sync!r}.")

        known_keys = {"source", "target", "url", "verbose", "page_size"}
        for key in sync:
            if key not in known_keys:
                raise ConfigError(f"Unknown key {key!r} in [sync] table.")

        defaults = SyncConfig.default()
        verbose = sync.get("verbose", defaults.verbose)
        # TOML booleans are ints in Python, but true is not a verbosity level.
        if isinstance(verbose, bool) or verbose not in (0, 1, 2):
            raise ConfigError(f"Expected verbose to be 0, 1, or 2, not {verbose!r}.")

        page_size = sync.get("page_size", defaults.page_size)
        if (
            isinstance(page_size, bool)
            or not isinstance(page_size, int)
            or not 1 <= page_size <= MAX_PAGE_SIZE
        ):
            raise ConfigError(
                f"Expected page_size to be between 1 and {MAX_PAGE_SIZE}, "
                f"not {page_size!r}."
            )

        for key in ("source", "target", "url"):
            if key in sync and not isinstance(sync[key], str):
                raise ConfigError(f"Expected {key} to be a string, not {sync[key]!r}.")

        return SyncConfig(
            source=sync.get("source", defaults.source),
            target=sync.get("target", defaults.target),
            api_url=sync.get("url", defaults.api_url),
            verbose=verbose,
            page_size=page_size,
        )

    @staticmethod
    def from_toml_file(fname: str) -> SyncConfig:
        try:
            with open(fname, "rb") as f:
                data = tomli.load(f)
        except OSError as exc:
            raise ConfigError(f"Could not read config file {fname!r}: {exc}") from exc
        except tomli.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid toml in {fname!r}: {exc}") from exc
        return SyncConfig.from_toml_dict(data)

    def with_arguments(self, args: argparse.Namespace) -> SyncConfig:
        """
        Overlay the options that were given on the command line. Options that
        were not given are None, and keep the value from the config file.
        """
        return SyncConfig(
            source=args.source if args.source is not None else self.source,
            target=args.target if args.target is not None else self.target,
            api_url=args.url if args.url is not None else self.api_url,
            verbose=args.verbose if args.verbose is not None else self.verbose,
            page_size=self.page_size,
        )


class MembershipApi(Protocol):
    def list_members_page(self, org: str, page: int, per_page: int) -> List[str]:
        ...

    def set_membership(self, org: str, login: str, role: str) -> GrantResponse:
        ...


def print_status_stderr(status: str) -> None:
    """
    On stderr, clear the current line with an ANSI escape code, jump back to
    the start of the line, and print the status, without a newline. This means
    that subsequent updates will overwrite each other (if nothing gets printed
    to stdout in the meantime).
    """
    clear_line = "\x1b[2K\r"
    print(f"{clear_line}{status}", end="", file=sys.stderr)


def print_progress_stderr(event: ProgressEvent) -> None:
    if event.outcome == GrantOutcome.SUCCESS:
        action = "Added"
    else:
        action = "Failed to add"
    print_status_stderr(f"[{event.index} / {event.total}] {action} {event.login}")


class GithubClient(NamedTuple):
    session: requests.Session
    api_url: str

    @staticmethod
    def new(github_token: Optional[str], api_url: str = DEFAULT_API_URL) -> GithubClient:
        session = requests.Session()
        session.headers.update(
            {
                "Accept": "application/vnd.github+json",
                "User-Agent": "GitHub Org User Sync",
            }
        )
        # Without a token we still make the requests; GitHub will tell us what
        # we are not allowed to see.
        if github_token is not None:
            session.headers["Authorization"] = f"token {github_token}"

        return GithubClient(session, api_url.rstrip("/"))

    def close(self) -> None:
        self.session.close()

    def list_members_page(self, org: str, page: int, per_page: int) -> List[str]:
        url = f"{self.api_url}/orgs/{org}/members"
        try:
            response = self.session.get(
                url,
                params={"page": page, "per_page": per_page},
                timeout=TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            raise RemoteListError(f"Failed to get {url!r}: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise RemoteListError(
                f"Got {response.status_code} from {url!r}: {response.text!r}"
            )

        try:
            members: List[Dict[str, Any]] = response.json()
            return [member["login"] for member in members]
        except (ValueError, TypeError, KeyError) as exc:
            raise RemoteListError(
                f"Unexpected response from {url!r}: {response.text!r}"
            ) from exc

    def set_membership(self, org: str, login: str, role: str) -> GrantResponse:
        url = f"{self.api_url}/orgs/{org}/memberships/{login}"
        try:
            response = self.session.put(
                url,
                json={"role": role},
                timeout=TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            raise RemoteGrantException(f"Failed to put {url!r}: {exc}") from exc

        try:
            body = response.json()
        except ValueError:
            # Error pages are not always json, keep the raw text then.
            body = response.text

        return GrantResponse(status=response.status_code, body=body)


def list_all_members(
    client: MembershipApi,
    org: str,
    page_size: int = MAX_PAGE_SIZE,
) -> List[str]:
    """
    Return the logins of all members of the organization, in the order the
    API lists them. We keep requesting pages as long as the previous page was
    full, so when the member count is a multiple of the page size, the final
    request returns an empty page.
    """
    if not 1 <= page_size <= MAX_PAGE_SIZE:
        raise ValueError(
            f"Page size must be between 1 and {MAX_PAGE_SIZE}, got {page_size}."
        )

    logins: List[str] = []
    page = 1

    while True:
        page_logins = client.list_members_page(org, page, page_size)
        logins.extend(page_logins)
        if len(page_logins) < page_size:
            break
        page += 1

    return logins


def find_missing_members(source: Iterable[str], target: Iterable[str]) -> List[str]:
    """
    Return the logins from source that are not in target, preserving the
    order (and any duplicates) of source. Logins are compared exactly, so this
    is case-sensitive.
    """
    target_set = set(target)
    return [login for login in source if login not in target_set]


def apply_missing_members(
    client: MembershipApi,
    org: str,
    missing: List[str],
    on_progress: Optional[Callable[[ProgressEvent], None]] = None,
    on_response: Optional[Callable[[str, GrantResponse], None]] = None,
) -> SyncResult:
    """
    Add every login in missing to the organization as a member, one request
    at a time and in order. A request that returns a non-success status counts
    as failed and we move on to the next login, there are no retries. When a
    request fails at the transport level, RemoteGrantException propagates and
    the remaining logins are not processed.
    """
    result = SyncResult(added=0, failed=0)

    for i, login in enumerate(missing):
        response = client.set_membership(org, login, OrganizationRole.MEMBER.value)
        if on_response is not None:
            on_response(login, response)

        if response.is_success():
            outcome = GrantOutcome.SUCCESS
        else:
            outcome = GrantOutcome.FAILED

        result = result.record(outcome)
        if on_progress is not None:
            on_progress(
                ProgressEvent(
                    index=i + 1,
                    total=len(missing),
                    login=login,
                    outcome=outcome,
                )
            )

    return result


def run_sync(client: MembershipApi, config: SyncConfig) -> SyncResult:
    """
    Add the members of the source organization that are missing from the
    target organization, printing output according to the verbosity level.
    """
    assert config.source is not None and config.target is not None

    source_members = list_all_members(client, config.source, config.page_size)
    target_members = list_all_members(client, config.target, config.page_size)
    missing_members = find_missing_members(source_members, target_members)

    if config.verbose >= 1:
        print(f"# Source members: {len(source_members)}")
        print(f"# Target members: {len(target_members)}")
        print(f"# Missing members: {len(missing_members)}")

    if config.verbose >= 2:
        print(f"Source members: {source_members}")
        print(f"Target members: {target_members}")
        print(f"Missing members: {missing_members}")

    def on_response(login: str, response: GrantResponse) -> None:
        if config.verbose >= 2:
            print(f"Response for {login}: {response.status} {response.body!r}")

    def on_progress(event: ProgressEvent) -> None:
        # The status line on stderr has no newline, so it would run into the
        # per-login lines on stdout. Show one or the other.
        if config.verbose == 0:
            print_progress_stderr(event)
        elif event.outcome == GrantOutcome.SUCCESS:
            print(f"Added {event.login}")
        else:
            print(f"Failed to add {event.login}")

    result = apply_missing_members(
        client,
        config.target,
        missing_members,
        on_progress=on_progress,
        on_response=on_response,
    )

    # After the final status update, clear the line again, so the summary is
    # not mixed with the progress line.
    print_status_stderr("")
    return result


def print_summary(result: SyncResult) -> None:
    print(f"\nSuccessfully added {result.added} members")
    print(f"\nFailed to add {result.failed} members")


def parse_arguments(argv: List[str]) -> argparse.Namespace:
    # We print the module docstring as help text, so disable argparse's own.
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("-h", "--help", action="store_true")
    parser.add_argument("-s", "--source")
    parser.add_argument("-t", "--target")
    parser.add_argument("-u", "--url")
    parser.add_argument("-v", "--verbose", type=int, choices=[0, 1, 2])
    parser.add_argument("-c", "--config")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_arguments(sys.argv[1:] if argv is None else argv)

    if args.help:
        print(__doc__)
        sys.exit(0)

    try:
        config = SyncConfig.default()
        if args.config is not None:
            config = SyncConfig.from_toml_file(args.config)
        config = config.with_arguments(args)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    if config.source is None or config.target is None:
        print(__doc__)
        print("Expected both a source and a target organization.", file=sys.stderr)
        sys.exit(1)

    github_token = os.getenv(TOKEN_ENV_VAR)
    if github_token is None:
        print(
            f"Warning: {TOKEN_ENV_VAR} is not set, requests are unauthenticated.",
            file=sys.stderr,
        )

    client = GithubClient.new(github_token, config.api_url)
    try:
        result = run_sync(client, config)
    except SyncError as exc:
        print_status_stderr("")
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    finally:
        client.close()

    print_summary(result)


if __name__ == "__main__":
    main()
