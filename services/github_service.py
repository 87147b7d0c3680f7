"""
GitHub API client for repository delivery.

Covers the three calls the escrow lifecycle needs: invite the buyer as a
collaborator, check whether the buyer accepted, and transfer repository
ownership. Every call uses the seller's own access token and a bounded
timeout; failures surface as GitHubServiceError.
"""

import asyncio
import logging
import re
from typing import Any, Dict, NamedTuple, Optional, Tuple

import aiohttp

from config import Config
from utils.marketplace_errors import GitHubServiceError

logger = logging.getLogger(__name__)

GITHUB_URL_PATTERN = re.compile(r"github\.com/([^/]+)/([^/]+?)(?:\.git)?(?:/|$)")
GITHUB_USERNAME_PATTERN = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9]|-(?=[A-Za-z0-9])){0,38}$")


class RepositoryRef(NamedTuple):
    owner: str
    repo: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"


def parse_github_url(url: Optional[str]) -> Optional[RepositoryRef]:
    """
    Extract owner and repo from a GitHub repository URL.

    Accepts ``https://github.com/<owner>/<repo>[.git][/...]``. Returns None
    on anything else; callers treat None as "cannot verify", not as an error.
    """
    if not url:
        return None
    match = GITHUB_URL_PATTERN.search(url.strip())
    if not match:
        return None
    return RepositoryRef(owner=match.group(1), repo=match.group(2))


def is_valid_github_username(username: str) -> bool:
    return bool(GITHUB_USERNAME_PATTERN.match(username))


class GitHubService:
    """Thin async client over the GitHub REST API"""

    def __init__(self, base_url: Optional[str] = None, timeout_seconds: Optional[int] = None):
        self.base_url = (base_url or Config.GITHUB_API_BASE_URL).rstrip("/")
        self.timeout_seconds = timeout_seconds or Config.PROVIDER_TIMEOUT_SECONDS

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Accept": "application/vnd.github.v3+json",
            "Authorization": f"Bearer {token}",
            "User-Agent": Config.GITHUB_USER_AGENT,
            "X-GitHub-Api-Version": "2022-11-28",
        }

    async def _request(
        self,
        method: str,
        path: str,
        token: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, Any]:
        """Issue one API call and return (status, decoded body or None)"""
        url = f"{self.base_url}{path}"
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(headers=self._headers(token), timeout=timeout) as session:
                async with session.request(method, url, json=payload) as response:
                    body = None
                    if response.content_type == "application/json":
                        body = await response.json()
                    return response.status, body
        except asyncio.TimeoutError as e:
            logger.error(f"⏱️ GITHUB_TIMEOUT: {method} {path} exceeded {self.timeout_seconds}s")
            raise GitHubServiceError(f"GitHub API timeout on {method} {path}") from e
        except aiohttp.ClientError as e:
            logger.error(f"❌ GITHUB_CONNECTION_ERROR: {method} {path}: {e}")
            raise GitHubServiceError(f"GitHub API connection error: {e}") from e

    @staticmethod
    def _raise_for_status(status: int, body: Any, context: str) -> None:
        message = body.get("message") if isinstance(body, dict) else None
        detail = f"{context}: HTTP {status}" + (f" ({message})" if message else "")
        if status == 401:
            logger.error(f"🔑 GITHUB_UNAUTHORIZED: {detail} - seller token revoked or expired")
        elif status == 404:
            logger.error(f"❌ GITHUB_NOT_FOUND: {detail} - repository missing or token lacks access")
        elif status == 403:
            logger.error(f"🚫 GITHUB_FORBIDDEN: {detail} - insufficient permissions or rate limited")
        else:
            logger.error(f"❌ GITHUB_API_ERROR: {detail}")
        raise GitHubServiceError(detail, status=status)

    async def send_collaborator_invite(self, owner: str, repo: str, username: str, seller_token: str) -> None:
        """Invite ``username`` with read access; 201 creates an invitation, 204 means already a collaborator"""
        status, body = await self._request(
            "PUT",
            f"/repos/{owner}/{repo}/collaborators/{username}",
            seller_token,
            {"permission": "pull"},
        )
        if status not in (201, 204):
            self._raise_for_status(status, body, f"Invite {username} to {owner}/{repo}")
        logger.info(f"📨 GITHUB_INVITE_SENT: {username} -> {owner}/{repo} (HTTP {status})")

    async def check_collaborator_access(self, owner: str, repo: str, username: str, seller_token: str) -> bool:
        """True once ``username`` is an accepted collaborator; pending invitations return False"""
        status, body = await self._request(
            "GET",
            f"/repos/{owner}/{repo}/collaborators/{username}",
            seller_token,
        )
        if status == 204:
            return True
        if status == 404:
            return False
        self._raise_for_status(status, body, f"Check {username} on {owner}/{repo}")

    async def transfer_repository_ownership(
        self, owner: str, repo: str, new_owner_username: str, seller_token: str
    ) -> Dict[str, Any]:
        """Hand the repository to ``new_owner_username``; GitHub answers 202 Accepted"""
        status, body = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/transfer",
            seller_token,
            {"new_owner": new_owner_username},
        )
        if status not in (200, 202):
            self._raise_for_status(status, body, f"Transfer {owner}/{repo} to {new_owner_username}")
        if not isinstance(body, dict) or "full_name" not in body:
            raise GitHubServiceError(
                f"Unexpected transfer response for {owner}/{repo}: missing repository payload",
                status=status,
            )
        logger.info(
            f"🏁 GITHUB_OWNERSHIP_TRANSFERRED: {owner}/{repo} -> {new_owner_username} (now {body['full_name']})"
        )
        return body


github_service = GitHubService()
