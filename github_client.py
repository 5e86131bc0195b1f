"""
GitHub API client for the enterprise user report
REST calls paginated with page/per_page, plus the GraphQL enterprise organization listing
Uses round-robin mechanism for multiple PATs to manage API rate limits
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import requests

PER_PAGE = 100
DEFAULT_API_URL = "https://api.github.com"
DEFAULT_GRAPHQL_URL = "https://api.github.com/graphql"
DEFAULT_WEB_URL = "https://github.com"


class GitHubAPIError(Exception):
    """A GitHub API call failed after any retries"""

    def __init__(
        self, message: str, status_code: Optional[int] = None, url: Optional[str] = None
    ):
        super().__init__(message)
        self.status_code = status_code
        self.url = url


class PATManager:
    """Manages multiple Personal Access Tokens with round-robin rotation"""

    def __init__(self, tokens: List[str]):
        if not tokens or all(not t.strip() for t in tokens):
            raise ValueError("At least one valid GitHub PAT is required")

        self.tokens = [t.strip() for t in tokens if t.strip()]
        self.current_index = 0
        self._lock = threading.Lock()

        logging.info(f"Initialized PAT Manager with {len(self.tokens)} token(s)")

    def get_next_token(self) -> str:
        """Rotate to the next token and return it"""
        with self._lock:
            self.current_index = (self.current_index + 1) % len(self.tokens)
            return self.tokens[self.current_index]

    def get_current_token(self) -> str:
        """Get current token without rotating"""
        return self.tokens[self.current_index]


def expect_type(data: Any, expected: type, url: str) -> Any:
    """Reject a decoded body whose shape is not the one the endpoint documents"""
    if not isinstance(data, expected):
        raise GitHubAPIError(
            f"Unexpected response from {url}: expected {expected.__name__}, "
            f"got {type(data).__name__}",
            status_code=200,
            url=url,
        )
    return data


def fetch_all_pages(
    fetch_page: Callable[[int], List[Any]], per_page: int = PER_PAGE
) -> List[Any]:
    """Call fetch_page(1), fetch_page(2), ... and concatenate the results.

    Stops after the first page holding fewer than per_page items, so a
    collection whose size is an exact multiple of per_page costs one extra
    request that comes back empty. Errors from fetch_page propagate.
    """
    items: List[Any] = []
    page = 1
    while True:
        batch = fetch_page(page)
        items.extend(batch)
        if len(batch) < per_page:
            return items
        page += 1


class GitHubClient:
    """Read-only access to the GitHub endpoints the user report needs"""

    def __init__(
        self,
        pat_manager: PATManager,
        api_url: str = DEFAULT_API_URL,
        graphql_url: str = DEFAULT_GRAPHQL_URL,
        web_url: str = DEFAULT_WEB_URL,
        session: Optional[requests.Session] = None,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        timeout: int = 30,
    ):
        self.pat_manager = pat_manager
        self.api_url = api_url.rstrip("/")
        self.graphql_url = graphql_url
        self.web_url = web_url.rstrip("/")
        self.session = session or requests.Session()
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.timeout = timeout

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }

    @staticmethod
    def _is_rate_limited(response: requests.Response) -> bool:
        if response.status_code == 429:
            return True
        return (
            response.status_code == 403
            and response.headers.get("X-RateLimit-Remaining") == "0"
        )

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text
        if isinstance(body, dict) and body.get("message"):
            return body["message"]
        return response.text

    def request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Send a request with rate limit handling and return the decoded JSON body"""
        token = self.pat_manager.get_current_token()
        last_error = "no attempt made"

        for attempt in range(self.max_retries):
            try:
                response = self.session.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    headers=self._headers(token),
                    timeout=self.timeout,
                )
            except requests.RequestException as e:
                last_error = str(e)
                logging.warning(
                    f"Request error for {url} (attempt {attempt + 1}/{self.max_retries}): {e}"
                )
                time.sleep(self.backoff_seconds * 2**attempt)
                continue

            if response.status_code == 200:
                try:
                    return response.json()
                except ValueError as e:
                    raise GitHubAPIError(
                        f"Invalid JSON from {url}: {e}", status_code=200, url=url
                    ) from e

            if self._is_rate_limited(response):
                last_error = f"rate limited (HTTP {response.status_code})"
                logging.warning(f"Rate limit hit on {url}, rotating token...")
                token = self.pat_manager.get_next_token()
                time.sleep(self.backoff_seconds * 2**attempt)
                continue

            if response.status_code >= 500:
                last_error = f"HTTP {response.status_code}: {self._error_message(response)}"
                logging.warning(
                    f"Server error for {url} (attempt {attempt + 1}/{self.max_retries}): {last_error}"
                )
                time.sleep(self.backoff_seconds * 2**attempt)
                continue

            raise GitHubAPIError(
                f"HTTP {response.status_code} for {url}: {self._error_message(response)}",
                status_code=response.status_code,
                url=url,
            )

        raise GitHubAPIError(
            f"Giving up on {url} after {self.max_retries} attempt(s): {last_error}",
            url=url,
        )

    def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return self.request("GET", f"{self.api_url}{path}", params=params)

    def get_object(self, path: str) -> Dict[str, Any]:
        """GET a single resource, which must decode to a JSON object"""
        url = f"{self.api_url}{path}"
        data = self.get(path)
        return expect_type(data, dict, url)

    def paginate(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        items_key: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch every page of a REST listing.

        items_key names the member holding the items when the endpoint wraps
        them in an object instead of returning a bare array.
        """

        def fetch_page(page: int) -> List[Dict[str, Any]]:
            page_params = dict(params or {})
            page_params.update({"per_page": PER_PAGE, "page": page})
            url = f"{self.api_url}{path}"
            data = self.get(path, page_params)
            if items_key:
                data = expect_type(data, dict, url).get(items_key) or []
            items = expect_type(data, list, url)
            for item in items:
                expect_type(item, dict, url)
            return items

        return fetch_all_pages(fetch_page)

    def graphql(
        self, query: str, variables: Optional[Dict] = None, allow_forbidden: bool = False
    ) -> Dict:
        """Execute GraphQL query, raising on reported errors

        With allow_forbidden, FORBIDDEN errors are only logged: GitHub reports
        them alongside partial data for resources the token may not see.
        """
        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        data = expect_type(
            self.request("POST", self.graphql_url, json_body=payload),
            dict,
            self.graphql_url,
        )
        errors = data.get("errors") or []
        forbidden = [err for err in errors if err.get("type") == "FORBIDDEN"]
        if allow_forbidden and forbidden:
            logging.warning(
                f"FORBIDDEN access detected for {len(forbidden)} resource(s)"
            )
            errors = [err for err in errors if err.get("type") != "FORBIDDEN"]
        if errors:
            messages = "; ".join(err.get("message", str(err)) for err in errors)
            raise GitHubAPIError(f"GraphQL errors: {messages}", url=self.graphql_url)
        return data.get("data") or {}

    def get_enterprise_organizations(self, enterprise: str) -> List[Dict]:
        """Fetch all organizations in the enterprise"""
        query = """
        query($enterprise: String!, $cursor: String) {
          enterprise(slug: $enterprise) {
            organizations(first: 100, after: $cursor) {
              pageInfo {
                hasNextPage
                endCursor
              }
              nodes {
                login
                name
                description
                url
              }
            }
          }
        }
        """

        organizations = []
        has_next_page = True
        cursor = None

        while has_next_page:
            variables = {"enterprise": enterprise, "cursor": cursor}
            result = self.graphql(query, variables, allow_forbidden=True)

            if not result.get("enterprise"):
                raise GitHubAPIError(
                    f"Enterprise '{enterprise}' not found or not accessible",
                    url=self.graphql_url,
                )

            orgs_data = result["enterprise"]["organizations"]
            # Organizations with access restrictions come back as null nodes
            organizations.extend(org for org in orgs_data["nodes"] if org is not None)

            has_next_page = orgs_data["pageInfo"]["hasNextPage"]
            cursor = orgs_data["pageInfo"]["endCursor"]

        logging.info(
            f"Found {len(organizations)} organizations in enterprise '{enterprise}'"
        )
        return organizations

    def list_organizations(self, enterprise: Optional[str] = None) -> List[Dict]:
        """List organizations of the enterprise, or those visible to the token owner"""
        if enterprise:
            return self.get_enterprise_organizations(enterprise)

        organizations = []
        for org in self.paginate("/user/orgs"):
            organizations.append(
                {
                    "login": org["login"],
                    "name": org.get("name"),
                    "description": org.get("description"),
                    "url": org.get("html_url") or f"{self.web_url}/{org['login']}",
                }
            )
        logging.info(f"Found {len(organizations)} organizations visible to the token")
        return organizations

    def list_members(self, org: str) -> List[Dict]:
        return self.paginate(f"/orgs/{org}/members")

    def list_outside_collaborators(self, org: str) -> List[Dict]:
        return self.paginate(f"/orgs/{org}/outside_collaborators")

    def get_membership(self, org: str, username: str) -> Dict:
        return self.get_object(f"/orgs/{org}/memberships/{username}")

    def get_user(self, username: str) -> Dict:
        return self.get_object(f"/users/{username}")

    def list_consumed_licenses(self, enterprise: str) -> List[Dict]:
        """List consumed license entries (needs read:enterprise or manage_billing:enterprise)"""
        return self.paginate(
            f"/enterprises/{enterprise}/consumed-licenses", items_key="users"
        )
