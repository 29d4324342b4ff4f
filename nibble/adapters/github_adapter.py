from __future__ import annotations

import base64
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
from jose import jwt

from nibble import constants
from nibble.adapters.types import ChangeRequest, FileContent
from nibble.errors import ProviderError
from nibble.response import parse_iso
from nibble.schemas import InstallationSummary, Repository


logger = logging.getLogger(__name__)

_API_VERSION = "2022-11-28"
_TOKEN_REFRESH_MARGIN = timedelta(seconds=60)
_PER_PAGE = 100
_SEARCH_PAGE_SIZE = 10


class GitHubApiError(ProviderError):
	"""Non-success response from the GitHub REST API."""

	def __init__(self, message: str, *, http_status: Optional[int] = None, code: str = "github_api_error"):
		super().__init__(message, code=code)
		self.http_status = http_status


def generate_app_jwt(app_id: str, private_key: str, now: Optional[float] = None) -> str:
	issued = int(now if now is not None else time.time())
	payload = {
		"iat": issued - 60,
		"exp": issued + 600,
		"iss": str(app_id),
	}
	return jwt.encode(payload, private_key, algorithm="RS256")


def _next_link(response: httpx.Response) -> Optional[str]:
	link_header = response.headers.get("Link")
	if not link_header:
		return None
	for part in link_header.split(","):
		segment = part.strip()
		if segment.endswith('rel="next"'):
			return segment[segment.find("<") + 1 : segment.find(">")]
	return None


def _to_repository(item: Dict[str, Any]) -> Repository:
	return Repository(
		id=item.get("id"),
		full_name=item["full_name"],
		default_branch=item.get("default_branch"),
		language=item.get("language"),
	)


class GitHubApp:
	"""App-level GitHub client. Hands out installation-scoped hosts."""

	def __init__(
		self,
		*,
		app_id: str,
		private_key: str,
		api_url: str = constants.DEFAULT_GITHUB_API_URL,
		client: Optional[httpx.AsyncClient] = None,
		timeout_s: float = 30.0,
	):
		self._app_id = app_id
		self._private_key = private_key
		self._client = client or httpx.AsyncClient(base_url=api_url.rstrip("/"), timeout=timeout_s)
		self._tokens: Dict[int, Tuple[str, datetime]] = {}

	def _headers(self, token: str) -> Dict[str, str]:
		return {
			"Authorization": f"Bearer {token}",
			"Accept": "application/vnd.github+json",
			"X-GitHub-Api-Version": _API_VERSION,
			"User-Agent": f"{constants.APP_NAME}/{constants.APP_VERSION}",
		}

	async def request(self, method: str, url: str, *, token: str, **kwargs: Any) -> httpx.Response:
		try:
			response = await self._client.request(method, url, headers=self._headers(token), **kwargs)
		except httpx.HTTPError as exc:
			raise GitHubApiError(f"GitHub request failed: {exc}", code="github_unreachable") from exc
		if response.status_code >= 400:
			raise GitHubApiError(
				f"GitHub {method} {response.request.url.path} returned {response.status_code}",
				http_status=response.status_code,
			)
		return response

	async def paginate(
		self,
		path: str,
		*,
		token: str,
		params: Optional[Dict[str, Any]] = None,
		item_key: Optional[str] = None,
	) -> List[Dict[str, Any]]:
		items: List[Dict[str, Any]] = []
		url: Optional[str] = path
		query: Optional[Dict[str, Any]] = {"per_page": _PER_PAGE, **(params or {})}
		while url:
			response = await self.request("GET", url, token=token, params=query)
			body = response.json()
			page = body.get(item_key, []) if item_key and isinstance(body, dict) else body
			if isinstance(page, list):
				items.extend(page)
			url = _next_link(response)
			query = None
		return items

	def app_token(self) -> str:
		return generate_app_jwt(self._app_id, self._private_key)

	async def installation_token(self, installation_id: int) -> str:
		now = datetime.now(timezone.utc)
		cached = self._tokens.get(installation_id)
		if cached and cached[1] - _TOKEN_REFRESH_MARGIN > now:
			return cached[0]

		response = await self.request(
			"POST",
			f"/app/installations/{installation_id}/access_tokens",
			token=self.app_token(),
		)
		data = response.json()
		token = data.get("token")
		expires_at = parse_iso(data.get("expires_at"))
		if not token or expires_at is None:
			raise GitHubApiError("GitHub installation token response missing token or expires_at")
		self._tokens[installation_id] = (token, expires_at)
		logger.debug("Issued installation token for %s", installation_id)
		return token

	async def list_installations(self) -> List[InstallationSummary]:
		items = await self.paginate("/app/installations", token=self.app_token())
		summaries: List[InstallationSummary] = []
		for item in items:
			account = item.get("account") or {}
			summaries.append(
				InstallationSummary(
					id=item["id"],
					account=account.get("login") or account.get("slug") or "",
					created_at=item.get("created_at"),
				)
			)
		return summaries

	async def list_repositories_for_installation(self, installation_id: int) -> List[Repository]:
		token = await self.installation_token(installation_id)
		items = await self.paginate("/installation/repositories", token=token, item_key="repositories")
		return [_to_repository(item) for item in items]

	async def installation_exists(self, installation_id: int) -> Optional[bool]:
		try:
			await self.request("GET", f"/app/installations/{installation_id}", token=self.app_token())
		except GitHubApiError as exc:
			if exc.http_status == 404:
				return False
			logger.warning("Could not check installation %s: %s", installation_id, exc.message)
			return None
		return True

	async def for_installation(self, installation_id: int) -> "GitHubRepositoryHost":
		await self.installation_token(installation_id)
		return GitHubRepositoryHost(self, installation_id)

	async def aclose(self) -> None:
		await self._client.aclose()


class GitHubRepositoryHost:
	"""Repository operations performed with an installation access token."""

	def __init__(self, app: GitHubApp, installation_id: int):
		self._app = app
		self.installation_id = installation_id

	async def _call(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
		token = await self._app.installation_token(self.installation_id)
		return await self._app.request(method, path, token=token, **kwargs)

	async def list_open_change_requests(self, owner: str, name: str, head_prefix: str) -> List[ChangeRequest]:
		token = await self._app.installation_token(self.installation_id)
		pulls = await self._app.paginate(
			f"/repos/{owner}/{name}/pulls",
			token=token,
			params={"state": "open"},
		)
		matches: List[ChangeRequest] = []
		for pull in pulls:
			head_ref = (pull.get("head") or {}).get("ref") or ""
			if head_ref.startswith(head_prefix):
				matches.append(ChangeRequest(number=pull["number"], url=pull.get("html_url", ""), head=head_ref))
		return matches

	async def get_default_branch(self, owner: str, name: str) -> str:
		response = await self._call("GET", f"/repos/{owner}/{name}")
		return response.json()["default_branch"]

	async def get_ref(self, owner: str, name: str, branch: str) -> str:
		response = await self._call("GET", f"/repos/{owner}/{name}/git/ref/heads/{quote(branch, safe='/')}")
		return response.json()["object"]["sha"]

	async def create_ref(self, owner: str, name: str, branch: str, sha: str) -> None:
		await self._call(
			"POST",
			f"/repos/{owner}/{name}/git/refs",
			json={"ref": f"refs/heads/{branch}", "sha": sha},
		)

	async def delete_ref(self, owner: str, name: str, branch: str) -> None:
		await self._call("DELETE", f"/repos/{owner}/{name}/git/refs/heads/{quote(branch, safe='/')}")

	async def search_code(self, owner: str, name: str, keyword: str) -> List[str]:
		response = await self._call(
			"GET",
			"/search/code",
			params={"q": f"{keyword} repo:{owner}/{name}", "per_page": _SEARCH_PAGE_SIZE},
		)
		paths: List[str] = []
		for item in response.json().get("items", []):
			path = item.get("path")
			if path and path not in paths:
				paths.append(path)
		return paths

	async def get_file_content(self, owner: str, name: str, path: str, ref: str) -> FileContent:
		response = await self._call(
			"GET",
			f"/repos/{owner}/{name}/contents/{quote(path, safe='/')}",
			params={"ref": ref},
		)
		data = response.json()
		if not isinstance(data, dict) or data.get("type") != "file":
			raise GitHubApiError(f"{path} is not a file", code="not_a_file")
		raw = base64.b64decode(data.get("content", ""))
		try:
			content = raw.decode("utf-8")
		except UnicodeDecodeError as exc:
			raise GitHubApiError(f"{path} is not UTF-8 text", code="binary_file") from exc
		return FileContent(content=content, fingerprint=data["sha"])

	async def update_file_content(
		self,
		owner: str,
		name: str,
		path: str,
		*,
		content: str,
		branch: str,
		expected_fingerprint: str,
		message: str,
	) -> None:
		try:
			await self._call(
				"PUT",
				f"/repos/{owner}/{name}/contents/{quote(path, safe='/')}",
				json={
					"message": message,
					"content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
					"branch": branch,
					"sha": expected_fingerprint,
				},
			)
		except GitHubApiError as exc:
			if exc.http_status in (409, 422):
				raise GitHubApiError(
					f"{path} changed since it was read",
					http_status=exc.http_status,
					code="precondition_failed",
				) from exc
			raise

	async def create_change_request(
		self,
		owner: str,
		name: str,
		*,
		title: str,
		body: str,
		head: str,
		base: str,
	) -> ChangeRequest:
		response = await self._call(
			"POST",
			f"/repos/{owner}/{name}/pulls",
			json={"title": title, "body": body, "head": head, "base": base},
		)
		data = response.json()
		return ChangeRequest(number=data["number"], url=data["html_url"], head=head)
