"""
GitHub pull requests via the GraphQL API.

Pull requests are requested newest first, so an incremental run stops
paginating at the first pull request created before the cutoff. Each staged
raw record is one pull-request node; extraction fans it out into the pull
request itself plus accounts, labels, reviews, reviewers, commits and
pull-request/commit links.

Environment Variables Required:
    GITHUB_TOKEN: Personal access token (or the variable named by ``token_env``)
"""

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from dotenv import load_dotenv

from ..collector.api_client import ApiClient, ApiResponse
from ..collector.base import PageResult, RequestData, collect_until, raw_message_array
from ..collector.collector import CollectorEngine
from ..collector.graphql_collector import GraphqlCollector, page_info_at
from ..common.errors import TransformError
from ..common.identity import CollectionIdentity, RawRecord, content_key
from .base import SourcePlugin

load_dotenv()

logger = logging.getLogger(__name__)

RAW_PRS_TABLE = "github_graphql_prs"
GITHUB_GRAPHQL_URL = "https://api.github.com"
MAX_PAGE_SIZE = 100

_ACCOUNT_FIELDS = "login ... on User { databaseId name email }"

PULL_REQUESTS_QUERY = f"""
query PullRequests($owner: String!, $name: String!, $pageSize: Int!, $skipCursor: String) {{
  rateLimit {{ cost }}
  repository(owner: $owner, name: $name) {{
    pullRequests(first: $pageSize, after: $skipCursor, orderBy: {{field: CREATED_AT, direction: DESC}}) {{
      totalCount
      pageInfo {{ endCursor hasNextPage }}
      nodes {{
        databaseId
        number
        state
        title
        body
        url
        createdAt
        updatedAt
        closedAt
        mergedAt
        headRefName
        headRefOid
        baseRefName
        baseRefOid
        mergeCommit {{ oid }}
        author {{ {_ACCOUNT_FIELDS} }}
        labels(first: 100) {{ nodes {{ id name }} }}
        reviews(first: 100) {{
          totalCount
          nodes {{
            databaseId
            body
            state
            submittedAt
            commit {{ oid }}
            author {{ {_ACCOUNT_FIELDS} }}
          }}
        }}
        commits(first: 100) {{
          totalCount
          nodes {{
            url
            commit {{
              oid
              message
              author {{ name email date user {{ {_ACCOUNT_FIELDS} }} }}
              committer {{ name email date }}
            }}
          }}
        }}
      }}
    }}
  }}
}}
"""


@dataclass(frozen=True)
class GithubAccount:
    connection_id: int
    id: Optional[int]
    login: str
    name: Optional[str] = None
    email: Optional[str] = None


@dataclass
class GithubPullRequest:
    connection_id: int
    github_id: int
    repo: str
    number: int
    state: str
    title: str
    url: Optional[str]
    created_at: Optional[datetime]
    updated_at: Optional[datetime]
    closed_at: Optional[datetime] = None
    merged_at: Optional[datetime] = None
    body: Optional[str] = None
    base_ref: Optional[str] = None
    base_commit_sha: Optional[str] = None
    head_ref: Optional[str] = None
    head_commit_sha: Optional[str] = None
    merge_commit_sha: Optional[str] = None
    author_id: Optional[int] = None
    author_name: Optional[str] = None
    type: Optional[str] = None
    component: Optional[str] = None


@dataclass(frozen=True)
class GithubPrLabel:
    connection_id: int
    pull_id: int
    label_name: str


@dataclass(frozen=True)
class GithubPrReview:
    connection_id: int
    github_id: int
    pull_request_id: int
    state: str
    body: Optional[str] = None
    commit_sha: Optional[str] = None
    submitted_at: Optional[datetime] = None
    author_user_id: Optional[int] = None
    author_username: Optional[str] = None


@dataclass(frozen=True)
class GithubReviewer:
    connection_id: int
    pull_request_id: int
    github_id: Optional[int] = None
    login: Optional[str] = None


@dataclass(frozen=True)
class GithubCommit:
    sha: str
    message: Optional[str]
    author_name: Optional[str]
    author_email: Optional[str]
    authored_date: Optional[datetime]
    committer_name: Optional[str]
    committer_email: Optional[str]
    committed_date: Optional[datetime]
    url: Optional[str] = None
    author_id: Optional[int] = None


@dataclass(frozen=True)
class GithubPrCommit:
    connection_id: int
    pull_request_id: int
    commit_sha: str


def parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def pr_created_at(node: dict[str, Any]) -> Optional[datetime]:
    return parse_time(node.get("createdAt"))


def pull_request_key(node: dict[str, Any]) -> Any:
    if node.get("databaseId") is not None:
        return node["databaseId"]
    return content_key(node)


def parse_prs_page(response: ApiResponse, request: RequestData) -> PageResult:
    nodes = raw_message_array(response, "repository.pullRequests.nodes")
    return collect_until(nodes, request.cutoff, pr_created_at)


def compile_label_pattern(pattern: Optional[str], option: str) -> Optional[re.Pattern]:
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as e:
        raise ValueError(f"Invalid regular expression for {option}: {e}") from e


def _label_match(pattern: Optional[re.Pattern], label: str) -> Optional[str]:
    if pattern is None:
        return None
    match = pattern.search(label)
    if match is None:
        return None
    return match.group(1) if pattern.groups else match.group(0)


def _account(node: Optional[dict[str, Any]], connection_id: int) -> Optional[GithubAccount]:
    if not node or not node.get("login"):
        return None
    return GithubAccount(
        connection_id=connection_id,
        id=node.get("databaseId"),
        login=node["login"],
        name=node.get("name"),
        email=node.get("email"),
    )


def extract_pull_request(
    node: dict[str, Any],
    connection_id: int,
    repo: str,
    type_pattern: Optional[re.Pattern] = None,
    component_pattern: Optional[re.Pattern] = None,
) -> list[Any]:
    """
    Fan one pull-request node out into typed records.

    Pending reviews are skipped. Accounts are emitted once per appearance;
    deduplication by id is left to the consumer.
    """
    if node.get("databaseId") is None:
        raise TransformError("Pull request node has no databaseId")

    author = _account(node.get("author"), connection_id)
    pr = GithubPullRequest(
        connection_id=connection_id,
        github_id=node["databaseId"],
        repo=repo,
        number=node.get("number"),
        state=node.get("state"),
        title=node.get("title"),
        url=node.get("url"),
        created_at=parse_time(node.get("createdAt")),
        updated_at=parse_time(node.get("updatedAt")),
        closed_at=parse_time(node.get("closedAt")),
        merged_at=parse_time(node.get("mergedAt")),
        body=node.get("body"),
        base_ref=node.get("baseRefName"),
        base_commit_sha=node.get("baseRefOid"),
        head_ref=node.get("headRefName"),
        head_commit_sha=node.get("headRefOid"),
        merge_commit_sha=(node.get("mergeCommit") or {}).get("oid"),
        author_id=author.id if author else None,
        author_name=author.login if author else None,
    )

    results: list[Any] = []
    if author:
        results.append(author)

    for label in (node.get("labels") or {}).get("nodes") or []:
        name = label.get("name") or ""
        results.append(GithubPrLabel(connection_id=connection_id, pull_id=pr.github_id, label_name=name))
        pr.type = _label_match(type_pattern, name) or pr.type
        pr.component = _label_match(component_pattern, name) or pr.component
    results.append(pr)

    for review in (node.get("reviews") or {}).get("nodes") or []:
        if review.get("state") == "PENDING":
            continue
        reviewer = _account(review.get("author"), connection_id)
        if reviewer:
            results.append(reviewer)
        results.append(
            GithubReviewer(
                connection_id=connection_id,
                pull_request_id=pr.github_id,
                github_id=reviewer.id if reviewer else None,
                login=reviewer.login if reviewer else None,
            )
        )
        results.append(
            GithubPrReview(
                connection_id=connection_id,
                github_id=review.get("databaseId"),
                pull_request_id=pr.github_id,
                state=review.get("state"),
                body=review.get("body"),
                commit_sha=(review.get("commit") or {}).get("oid"),
                submitted_at=parse_time(review.get("submittedAt")),
                author_user_id=reviewer.id if reviewer else None,
                author_username=reviewer.login if reviewer else None,
            )
        )

    for entry in (node.get("commits") or {}).get("nodes") or []:
        commit = entry.get("commit") or {}
        commit_author = commit.get("author") or {}
        committer = commit.get("committer") or {}
        user = _account(commit_author.get("user"), connection_id)
        results.append(
            GithubCommit(
                sha=commit.get("oid"),
                message=commit.get("message"),
                author_name=commit_author.get("name"),
                author_email=commit_author.get("email"),
                authored_date=parse_time(commit_author.get("date")),
                committer_name=committer.get("name"),
                committer_email=committer.get("email"),
                committed_date=parse_time(committer.get("date")),
                url=entry.get("url"),
                author_id=user.id if user else None,
            )
        )
        results.append(
            GithubPrCommit(connection_id=connection_id, pull_request_id=pr.github_id, commit_sha=commit.get("oid"))
        )
        if user:
            results.append(user)

    return results


class GithubPrsPlugin(SourcePlugin):
    """
    The ``github_prs`` source of collectors.yml.

    Params:
        repo: "owner/name" of the repository (required)
        connection_id: Connection the records belong to (default 1)
        pr_type: Regex applied to label names; its first group becomes the PR type
        pr_component: Regex applied to label names; its first group becomes the component
    """

    plugin_name = "github_prs"

    def __init__(self, config, client: Optional[ApiClient] = None):
        super().__init__(config)
        params = config.params
        repo = params.get("repo") or ""
        if repo.count("/") != 1 or not all(repo.split("/")):
            raise ValueError(f"github_prs source '{config.name}' needs params.repo as 'owner/name', got {repo!r}")
        self.repo = repo
        self.owner, self.name = repo.split("/")
        self.connection_id = int(params.get("connection_id", 1))
        self.type_pattern = compile_label_pattern(params.get("pr_type"), "pr_type")
        self.component_pattern = compile_label_pattern(params.get("pr_component"), "pr_component")

        if client is None:
            token = config.token() or os.getenv("GITHUB_TOKEN")
            if not token:
                raise ValueError("GITHUB_TOKEN must be set in environment or passed as parameter")
            client = ApiClient(
                config.base_url or GITHUB_GRAPHQL_URL,
                token=token,
                timeout=config.settings.request_timeout_seconds or 30,
            )
        self.client = client

    @property
    def identity(self) -> CollectionIdentity:
        return CollectionIdentity.of(RAW_PRS_TABLE, connection_id=self.connection_id, name=self.repo)

    def build_query(self, request: RequestData) -> tuple[str, dict[str, Any]]:
        return PULL_REQUESTS_QUERY, {
            "owner": self.owner,
            "name": self.name,
            "pageSize": request.pager.size,
            "skipCursor": request.pager.cursor,
        }

    def build_collector(self, *, store, state_store, full_sync=False, cancel_event=None, progress=None) -> CollectorEngine:
        args = self.collector_args(
            store=store,
            state_store=state_store,
            full_sync=full_sync,
            cancel_event=cancel_event,
            progress=progress,
        )
        # GitHub caps connection pages at 100 nodes.
        args["page_size"] = min(args["page_size"], MAX_PAGE_SIZE)
        return GraphqlCollector(
            client=self.client,
            build_query=self.build_query,
            get_page_info=page_info_at("repository.pullRequests.pageInfo"),
            response_parser=parse_prs_page,
            record_key=pull_request_key,
            **args,
        )

    def transform(self, raw: RawRecord) -> list[Any]:
        if not isinstance(raw.data, dict):
            raise TransformError(f"Expected a pull request object, got {type(raw.data).__name__}")
        return extract_pull_request(
            raw.data,
            connection_id=self.connection_id,
            repo=self.repo,
            type_pattern=self.type_pattern,
            component_pattern=self.component_pattern,
        )

    def close(self) -> None:
        self.client.close()


__all__ = [
    "GithubPrsPlugin",
    "GithubAccount",
    "GithubPullRequest",
    "GithubPrLabel",
    "GithubPrReview",
    "GithubReviewer",
    "GithubCommit",
    "GithubPrCommit",
    "extract_pull_request",
    "parse_prs_page",
    "pull_request_key",
    "PULL_REQUESTS_QUERY",
    "RAW_PRS_TABLE",
]
