"""
GitHub Enterprise User Collection Script
Collects members and outside collaborators of every organization, enriched with
profile, membership role and license details, and writes a JSON snapshot
"""

import json
import logging
import os
import sys
import time
import traceback
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from dotenv import load_dotenv

from github_client import (
    DEFAULT_API_URL,
    DEFAULT_GRAPHQL_URL,
    DEFAULT_WEB_URL,
    GitHubAPIError,
    GitHubClient,
    PATManager,
)

NOT_AVAILABLE = "N/A"
NO_DESCRIPTION = "No description"
ROLE_UNKNOWN = "unknown"
USER_TYPE_MEMBER = "member"
USER_TYPE_OUTSIDE_COLLABORATOR = "outside_collaborator"

LICENSE_VISUAL_STUDIO = "visual_studio"
LICENSE_ENTERPRISE = "enterprise"
LICENSE_UNKNOWN = "unknown"


class ConfigurationError(Exception):
    """Required configuration is missing or invalid"""


class CollectionError(Exception):
    """Mandatory data could not be collected, so no snapshot can be produced"""


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Read the run configuration from the environment"""
    env = os.environ if environ is None else environ

    def value(name: str, default: str = "") -> str:
        return (env.get(name) or default).strip()

    tokens_string = value("GITHUB_PATS") or value("GITHUB_TOKEN")
    tokens = [t.strip() for t in tokens_string.split(",") if t.strip()]
    if not tokens:
        raise ConfigurationError("GITHUB_TOKEN (or GITHUB_PATS) is not set")

    try:
        user_detail_delay = float(value("USER_DETAIL_DELAY", "0.1"))
        max_workers = int(value("MAX_WORKERS", "1"))
    except ValueError as e:
        raise ConfigurationError(f"Invalid numeric setting: {e}") from e

    if user_detail_delay < 0:
        raise ConfigurationError("USER_DETAIL_DELAY must not be negative")
    if max_workers < 1:
        raise ConfigurationError("MAX_WORKERS must be at least 1")

    return {
        "tokens": tokens,
        "enterprise": value("GITHUB_ENTERPRISE") or None,
        "api_url": value("GITHUB_API_URL", DEFAULT_API_URL),
        "graphql_url": value("GITHUB_GRAPHQL_URL", DEFAULT_GRAPHQL_URL),
        "web_url": value("GITHUB_WEB_URL", DEFAULT_WEB_URL),
        "user_detail_delay": user_detail_delay,
        "max_workers": max_workers,
        "user_data_file": value(
            "USER_DATA_FILE", os.path.join("output", "users-data.json")
        ),
    }


def fixed_delay(seconds: float) -> Callable[[], None]:
    """Pause policy applied after every per-user detail fetch"""

    def pause():
        if seconds > 0:
            time.sleep(seconds)

    return pause


def sort_key(value: str):
    return (value.lower(), value)


def license_entry_from_api(item: Dict[str, Any]) -> Dict[str, Any]:
    """Convert one consumed-license item into a LicenseEntry"""
    return {
        "licenseType": item.get("license_type") or None,
        "visualStudioSubscriptionUser": bool(
            item.get("visual_studio_subscription_user")
        ),
        "visualStudioLicenseStatus": item.get("visual_studio_license_status") or None,
        "roles": list(item.get("github_com_enterprise_roles") or [])
        + list(item.get("github_com_member_roles") or []),
    }


def build_license_index(
    client: GitHubClient, enterprise: Optional[str]
) -> Optional[Dict[str, Dict[str, Any]]]:
    """Map account login to license details for the whole enterprise.

    Returns None when no enterprise is configured. Seats without a linked
    github.com account are skipped. Fetch failures propagate as
    GitHubAPIError; the caller decides whether to carry on without licenses.
    """
    if not enterprise:
        logging.info("GITHUB_ENTERPRISE not set, skipping license data")
        return None

    logging.info(f"Fetching consumed licenses for enterprise '{enterprise}'")
    index = {}
    for item in client.list_consumed_licenses(enterprise):
        login = item.get("github_com_login")
        if not login:
            continue
        index[login] = license_entry_from_api(item)

    logging.info(f"Loaded license data for {len(index)} account(s)")
    return index


def license_kind(user: Dict[str, Any]) -> str:
    """Classify a UserRecord; a Visual Studio subscription wins over enterprise"""
    license_type = (user.get("licenseType") or "").strip().lower()
    if user.get("visualStudioSubscriptionUser") or license_type.startswith(
        "visual studio"
    ):
        return LICENSE_VISUAL_STUDIO
    if license_type:
        return LICENSE_ENTERPRISE
    return LICENSE_UNKNOWN


def fetch_membership_role(
    client: GitHubClient, org_login: str, username: str
) -> Optional[str]:
    try:
        membership = client.get_membership(org_login, username)
    except GitHubAPIError as e:
        logging.warning(
            f"Could not fetch membership of {username} in {org_login}: {e}"
        )
        return None
    return membership.get("role") or None


def fetch_profile(client: GitHubClient, username: str) -> Optional[Dict[str, Any]]:
    try:
        return client.get_user(username)
    except GitHubAPIError as e:
        logging.warning(f"Could not fetch profile of {username}: {e}")
        return None


def build_user_record(
    account: Dict[str, Any],
    user_type: str,
    role: Optional[str],
    profile: Optional[Dict[str, Any]],
    license_entry: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    """Merge listing, role, profile and license lookups into one UserRecord.

    Any lookup may be None; its fields fall back to the sentinels.
    """
    username = account["login"]
    profile = profile or {}
    license_entry = license_entry or {}

    return {
        "username": username,
        "displayName": profile.get("name") or username,
        "userType": user_type,
        "role": role or ROLE_UNKNOWN,
        "company": profile.get("company") or NOT_AVAILABLE,
        "location": profile.get("location") or NOT_AVAILABLE,
        "email": profile.get("email") or NOT_AVAILABLE,
        "profileUrl": account.get("html_url") or NOT_AVAILABLE,
        "avatarUrl": account.get("avatar_url") or NOT_AVAILABLE,
        "licenseType": license_entry.get("licenseType"),
        "visualStudioSubscriptionUser": bool(
            license_entry.get("visualStudioSubscriptionUser")
        ),
    }


def count_users(users: List[Dict[str, Any]]) -> Dict[str, int]:
    kinds = [license_kind(user) for user in users]
    return {
        "userCount": len(users),
        "memberCount": sum(1 for u in users if u["userType"] == USER_TYPE_MEMBER),
        "outsideCollaboratorCount": sum(
            1 for u in users if u["userType"] == USER_TYPE_OUTSIDE_COLLABORATOR
        ),
        "visualStudioLicenseCount": kinds.count(LICENSE_VISUAL_STUDIO),
        "githubEnterpriseLicenseCount": kinds.count(LICENSE_ENTERPRISE),
        "unknownLicenseCount": kinds.count(LICENSE_UNKNOWN),
    }


class OrganizationCollector:
    """Collects the users of one organization"""

    def __init__(
        self,
        client: GitHubClient,
        license_index: Optional[Dict[str, Dict[str, Any]]] = None,
        pause: Optional[Callable[[], None]] = None,
        max_workers: int = 1,
    ):
        self.client = client
        self.license_index = license_index or {}
        self.pause = pause or fixed_delay(0)
        self.max_workers = max_workers

    def _map(self, func: Callable, items: List[Dict[str, Any]]) -> List[Any]:
        if self.max_workers > 1 and len(items) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                return list(executor.map(func, items))
        return [func(item) for item in items]

    def collect_member(self, org_login: str, member: Dict[str, Any]) -> Dict[str, Any]:
        username = member["login"]
        role = fetch_membership_role(self.client, org_login, username)
        profile = fetch_profile(self.client, username)
        self.pause()
        return build_user_record(
            member,
            USER_TYPE_MEMBER,
            role,
            profile,
            self.license_index.get(username),
        )

    def collect_outside_collaborator(self, collaborator: Dict[str, Any]) -> Dict[str, Any]:
        username = collaborator["login"]
        profile = fetch_profile(self.client, username)
        self.pause()
        return build_user_record(
            collaborator,
            USER_TYPE_OUTSIDE_COLLABORATOR,
            USER_TYPE_OUTSIDE_COLLABORATOR,
            profile,
            self.license_index.get(username),
        )

    def collect(self, org: Dict[str, Any]) -> Dict[str, Any]:
        """Build the OrganizationSnapshot; uniqueUserCount is filled in later"""
        org_login = org["login"]

        try:
            members = self.client.list_members(org_login)
        except GitHubAPIError as e:
            raise CollectionError(
                f"Failed to list members of organization {org_login}: {e}"
            ) from e

        try:
            collaborators = self.client.list_outside_collaborators(org_login)
        except GitHubAPIError as e:
            logging.warning(
                f"Could not list outside collaborators of {org_login}, continuing without them: {e}"
            )
            collaborators = []

        # Membership wins when an account is listed both ways
        member_logins = {m["login"] for m in members}
        duplicates = [c["login"] for c in collaborators if c["login"] in member_logins]
        if duplicates:
            logging.warning(
                f"{len(duplicates)} outside collaborator(s) of {org_login} are also members, keeping member entries: {', '.join(duplicates)}"
            )
            collaborators = [c for c in collaborators if c["login"] not in member_logins]

        logging.info(
            f"{org_login}: {len(members)} member(s), {len(collaborators)} outside collaborator(s)"
        )

        member_records = self._map(
            lambda member: self.collect_member(org_login, member), members
        )
        collaborator_records = self._map(
            self.collect_outside_collaborator, collaborators
        )
        member_records.sort(key=lambda u: sort_key(u["username"]))
        collaborator_records.sort(key=lambda u: sort_key(u["username"]))
        users = member_records + collaborator_records

        counts = count_users(users)
        snapshot = {
            "name": org_login,
            "displayName": org.get("name") or org_login,
            "description": org.get("description") or NO_DESCRIPTION,
            "url": org.get("url"),
        }
        snapshot.update(counts)
        snapshot["uniqueUserCount"] = 0
        snapshot["users"] = users

        logging.info(f"Collected {counts['userCount']} users from {org_login}")
        return snapshot


class UniqueUserTracker:
    """Attributes every account to the first organization it is seen in"""

    def __init__(self):
        self.first_org: Dict[str, str] = {}

    def observe(self, org_name: str, usernames: Iterable[str]):
        for username in usernames:
            self.first_org.setdefault(username, org_name)

    def attributed_organization(self, username: str) -> Optional[str]:
        return self.first_org.get(username)

    def unique_count(self, org_name: str, usernames: Iterable[str]) -> int:
        return sum(1 for u in usernames if self.first_org.get(u) == org_name)

    @property
    def total_unique(self) -> int:
        return len(self.first_org)


def attribute_unique_users(
    organizations: List[Dict[str, Any]], tracker: Optional[UniqueUserTracker] = None
) -> UniqueUserTracker:
    """Fill in uniqueUserCount for organizations that are already sorted.

    One pass records first-seen organizations, a second counts the users
    each organization owns.
    """
    if tracker is None:
        tracker = UniqueUserTracker()

    for org in organizations:
        tracker.observe(org["name"], (user["username"] for user in org["users"]))

    for org in organizations:
        org["uniqueUserCount"] = tracker.unique_count(
            org["name"], (user["username"] for user in org["users"])
        )

    return tracker


class EnterpriseUserCollector:
    """Collects user inventory across all organizations of the enterprise"""

    def __init__(
        self,
        client: GitHubClient,
        enterprise: Optional[str] = None,
        pause: Optional[Callable[[], None]] = None,
        max_workers: int = 1,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.client = client
        self.enterprise = enterprise
        self.pause = pause
        self.max_workers = max_workers
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def load_license_index(self) -> Optional[Dict[str, Dict[str, Any]]]:
        try:
            return build_license_index(self.client, self.enterprise)
        except GitHubAPIError as e:
            logging.warning(
                f"Could not load license data for enterprise '{self.enterprise}', continuing without it: {e}"
            )
            return None

    def list_organizations(self) -> List[Dict[str, Any]]:
        try:
            organizations = self.client.list_organizations(self.enterprise)
        except GitHubAPIError as e:
            raise CollectionError(f"Failed to list organizations: {e}") from e

        if not organizations:
            raise CollectionError(
                "No organizations found. Please check that the PAT has 'read:org' "
                "scope and, when GITHUB_ENTERPRISE is set, access to the enterprise."
            )
        return organizations

    def collect(self) -> Dict[str, Any]:
        """Run the whole collection and return the EnterpriseSnapshot"""
        logging.info("Starting enterprise user data collection")

        license_index = self.load_license_index()
        organizations = self.list_organizations()

        org_collector = OrganizationCollector(
            self.client,
            license_index=license_index,
            pause=self.pause,
            max_workers=self.max_workers,
        )

        total_orgs = len(organizations)
        results = []
        for idx, org in enumerate(organizations, 1):
            logging.info(f"Processing organization {idx}/{total_orgs}: {org['login']}")
            results.append(org_collector.collect(org))

        results.sort(key=lambda o: sort_key(o["name"]))
        tracker = attribute_unique_users(results)

        summary = {
            "totalOrganizations": len(results),
            "totalUsers": sum(org["userCount"] for org in results),
            "totalUniqueUsers": tracker.total_unique,
        }

        logging.info(
            f"Collected data from {summary['totalOrganizations']} organizations with "
            f"{summary['totalUsers']} total users ({summary['totalUniqueUsers']} unique)"
        )

        return {
            "generatedAt": self.clock().isoformat(),
            "enterprise": self.enterprise,
            "licenseDataAvailable": license_index is not None,
            "summary": summary,
            "organizations": results,
        }


def write_snapshot(snapshot: Dict[str, Any], path: str):
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(snapshot, f, indent=2, ensure_ascii=False)


def main():
    """Main execution function"""
    load_dotenv()

    log_dir = os.getenv("LOG_DIR", os.path.join("output", "logs"))
    os.makedirs(log_dir, exist_ok=True)
    log_filename = os.path.join(
        log_dir, f"enterprise_users_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"
    )
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=[logging.FileHandler(log_filename), logging.StreamHandler()],
    )

    try:
        settings = load_settings()
    except ConfigurationError as e:
        logging.error(f"Configuration error: {e}")
        print(f"Error: {e}")
        sys.exit(1)

    logging.info(
        f"Configuration loaded - Enterprise: {settings['enterprise'] or '(not set)'}"
    )

    try:
        client = GitHubClient(
            PATManager(settings["tokens"]),
            api_url=settings["api_url"],
            graphql_url=settings["graphql_url"],
            web_url=settings["web_url"],
        )
        collector = EnterpriseUserCollector(
            client,
            enterprise=settings["enterprise"],
            pause=fixed_delay(settings["user_detail_delay"]),
            max_workers=settings["max_workers"],
        )
        snapshot = collector.collect()
        write_snapshot(snapshot, settings["user_data_file"])

    except KeyboardInterrupt:
        logging.warning("Operation cancelled by user, no data written")
        sys.exit(1)
    except CollectionError as e:
        logging.error(f"Collection failed: {e}")
        print(f"\n[ERROR] {e}")
        sys.exit(1)
    except Exception as e:
        logging.error(f"Error: {e}")
        logging.error(traceback.format_exc())
        print(f"\n[ERROR] Error: {e}")
        sys.exit(1)

    summary = snapshot["summary"]
    print(
        f"\n[OK] Collected {summary['totalOrganizations']} organizations with "
        f"{summary['totalUsers']} total users ({summary['totalUniqueUsers']} unique)"
    )
    print(f"[OK] Data written to: {settings['user_data_file']}")
    print(f"[OK] Log file saved to: {log_filename}")


if __name__ == "__main__":
    main()
