from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib import error as urllib_error, parse as urllib_parse, request as urllib_request

from preview_deploy.errors import CommentApiError
from preview_deploy.models import IssueComment, utc_now


logger = logging.getLogger("preview-deploy.comment")

PAGE_SIZE = 100
MAX_PAGES = 50


class GitHubCommentRepository:
    """Issue-comment endpoints of the GitHub REST API."""

    def __init__(
        self,
        repository: str,
        token: Optional[str],
        *,
        api_url: str = "https://api.github.com",
        timeout: float = 15,
    ) -> None:
        if not repository or "/" not in repository:
            raise ValueError(f"repository must look like owner/name, got '{repository}'")
        self.repository = repository
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    async def list_comments(self, pull_request: int) -> List[IssueComment]:
        comments: List[IssueComment] = []
        for page in range(1, MAX_PAGES + 1):
            payload = await asyncio.to_thread(
                self._call_api,
                "GET",
                f"/issues/{pull_request}/comments",
                query={"per_page": PAGE_SIZE, "page": page},
            )
            if not isinstance(payload, list):
                raise CommentApiError("unexpected comment listing payload")
            comments.extend(_to_comment(item) for item in payload if isinstance(item, dict))
            if len(payload) < PAGE_SIZE:
                break
        else:
            logger.warning(
                "Stopped listing comments for #%s after %d pages.", pull_request, MAX_PAGES
            )
        return comments

    async def create_comment(self, pull_request: int, body: str) -> IssueComment:
        payload = await asyncio.to_thread(
            self._call_api,
            "POST",
            f"/issues/{pull_request}/comments",
            body={"body": body},
        )
        return _to_comment(payload)

    async def update_comment(self, comment_id: int, body: str) -> IssueComment:
        payload = await asyncio.to_thread(
            self._call_api,
            "PATCH",
            f"/issues/comments/{comment_id}",
            body={"body": body},
        )
        return _to_comment(payload)

    def _call_api(
        self,
        method: str,
        path: str,
        *,
        query: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.api_url}/repos/{self.repository}{path}"
        if query:
            url = f"{url}?{urllib_parse.urlencode(query)}"
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": "preview-deploy",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"

        request = urllib_request.Request(url, data=data, headers=headers, method=method)
        try:
            with urllib_request.urlopen(request, timeout=self.timeout) as response:
                raw = response.read()
        except urllib_error.HTTPError as exc:
            error_body = ""
            try:
                error_body = exc.read().decode("utf-8", errors="ignore")
            except Exception:  # pragma: no cover - defensive
                error_body = ""
            details = error_body or exc.reason
            raise CommentApiError(f"GitHub {method} {path} HTTP {exc.code}: {details}") from exc
        except urllib_error.URLError as exc:
            raise CommentApiError(f"GitHub {method} {path} failed: {exc.reason}") from exc

        try:
            return json.loads(raw.decode("utf-8")) if raw else None
        except ValueError as exc:
            raise CommentApiError(f"Failed to parse GitHub {method} {path} response") from exc


def _to_comment(item: Any) -> IssueComment:
    if not isinstance(item, dict) or "id" not in item:
        raise CommentApiError("comment payload is missing an id")
    user = item.get("user") or {}
    return IssueComment(
        comment_id=item["id"],
        author=user.get("login") if isinstance(user, dict) else None,
        body=item.get("body") or "",
        created_at=_parse_timestamp(item.get("created_at")),
        url=item.get("html_url"),
    )


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Unparseable comment timestamp %r", value)
    return utc_now()
