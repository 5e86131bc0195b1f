"""
Enterprise User Report Formatter
Renders the JSON snapshot written by enterprise_users.py as a markdown report
"""

import json
import logging
import os
import re
import sys
from datetime import datetime
from typing import Any, Dict, List

from dotenv import load_dotenv

from enterprise_users import (
    LICENSE_ENTERPRISE,
    LICENSE_VISUAL_STUDIO,
    NOT_AVAILABLE,
    USER_TYPE_MEMBER,
    USER_TYPE_OUTSIDE_COLLABORATOR,
    license_kind,
)

SUMMARY_LABELS = {
    "totalOrganizations": "Total Organizations",
    "totalUsers": "Total Users",
    "totalUniqueUsers": "Total Unique Users",
}

DESCRIPTION_WIDTH = 50


def format_date(generated_at: str) -> str:
    timestamp = datetime.fromisoformat(generated_at.replace("Z", "+00:00"))
    return f"{timestamp:%A, %B} {timestamp.day}, {timestamp.year}"


def truncate(text: str, width: int = DESCRIPTION_WIDTH) -> str:
    if len(text) > width:
        return text[: width - 3] + "..."
    return text


def cell(value: Any) -> str:
    """Table-safe text: sentinels become '-', pipes and newlines are escaped"""
    if value is None or value == NOT_AVAILABLE or value == "":
        return "-"
    return str(value).replace("|", "\\|").replace("\n", " ")


def bold_if_nonzero(count: int) -> str:
    return f"**{count}**" if count > 0 else str(count)


def format_license(user: Dict[str, Any]) -> str:
    kind = license_kind(user)
    if kind == LICENSE_VISUAL_STUDIO:
        return "🟦 **VS+GitHub**"
    if kind == LICENSE_ENTERPRISE:
        if user["licenseType"].lower() == "enterprise":
            return "🟩 GitHub Enterprise"
        return cell(user["licenseType"])
    return "-"


def format_license_breakdown(org: Dict[str, Any]) -> str:
    vs_count = org["visualStudioLicenseCount"]
    ghe_count = org["githubEnterpriseLicenseCount"]
    unknown_count = org["unknownLicenseCount"]

    if vs_count or ghe_count:
        parts = []
        if vs_count:
            parts.append(f"{vs_count} VS+GitHub")
        if ghe_count:
            parts.append(f"{ghe_count} GitHub Enterprise")
        if unknown_count:
            parts.append(f"{unknown_count} unknown")
        return f" - Licenses: {', '.join(parts)}"
    if unknown_count:
        return " - ⚠️ License info not available"
    return ""


def render_summary_table(organizations: List[Dict[str, Any]]) -> List[str]:
    lines = [
        "| Organization | Total Users | Members | Outside Collaborators | VS+GitHub | GitHub Only | Unknown | Unique Users | Description |",
        "|-------------|-------------|---------|---------------------|-----------|-------------|---------|-------------|-------------|",
    ]
    for org in organizations:
        unknown = org["unknownLicenseCount"]
        lines.append(
            f"| [{cell(org['displayName'])}]({org['url']}) "
            f"| **{org['userCount']}** "
            f"| {org['memberCount']} "
            f"| {org['outsideCollaboratorCount']} "
            f"| {bold_if_nonzero(org['visualStudioLicenseCount'])} "
            f"| {bold_if_nonzero(org['githubEnterpriseLicenseCount'])} "
            f"| {f'⚠️ {unknown}' if unknown else unknown} "
            f"| **{org['uniqueUserCount']}** "
            f"| {cell(truncate(org['description']))} |"
        )
    return lines


def user_link(user: Dict[str, Any]) -> str:
    profile_url = user.get("profileUrl")
    if not profile_url or profile_url == NOT_AVAILABLE:
        return f"@{user['username']}"
    return f"[@{user['username']}]({profile_url})"


def render_user_rows(users: List[Dict[str, Any]], with_role: bool) -> List[str]:
    rows = []
    for user in users:
        display_name = (
            user["displayName"] if user["displayName"] != user["username"] else "-"
        )
        columns = [user_link(user), cell(display_name)]
        if with_role:
            columns.append(f"`{user['role']}`")
        columns += [
            format_license(user),
            cell(user["company"]),
            cell(user["location"]),
        ]
        rows.append("| " + " | ".join(columns) + " |")
    return rows


def render_organization(org: Dict[str, Any]) -> List[str]:
    lines = [
        "",
        f"### 🏢 {cell(org['displayName'])} ({org['userCount']} users: "
        f"{org['memberCount']} members, {org['outsideCollaboratorCount']} outside collaborators"
        f"{format_license_breakdown(org)})",
    ]

    members = [u for u in org["users"] if u["userType"] == USER_TYPE_MEMBER]
    if members:
        lines += [
            "",
            f"#### 👥 Organization Members ({org['memberCount']})",
            "",
            "| Username | Display Name | Role | License Type | Company | Location |",
            "|----------|-------------|------|--------------|---------|----------|",
        ]
        lines += render_user_rows(members, with_role=True)

    collaborators = [
        u for u in org["users"] if u["userType"] == USER_TYPE_OUTSIDE_COLLABORATOR
    ]
    if collaborators:
        lines += [
            "",
            f"#### 🤝 Outside Collaborators ({org['outsideCollaboratorCount']})",
            "",
            "| Username | Display Name | License Type | Company | Location |",
            "|----------|-------------|--------------|---------|----------|",
        ]
        lines += render_user_rows(collaborators, with_role=False)

    return lines


FOOTER = """
---

## 📝 Report Details

### 🔢 Unique User Counting

Users who appear in more than one organization are counted once, in the first
organization they appear in (alphabetically).

- **Users**: total number of memberships across all organizations
- **Unique Users**: users counted once, attributed to their first organization

### 🪪 License Types

- **🟦 VS+GitHub**: Visual Studio subscription that includes GitHub Enterprise
- **🟩 GitHub Enterprise**: GitHub Enterprise license without Visual Studio
- **⚠️ Unknown**: no license data (needs enterprise admin access and GITHUB_ENTERPRISE)

### 🔍 User Types

- **Organization Members**: formal members of the organization
- **Outside Collaborators**: users with access to specific repositories who are not members
"""


def render_report(snapshot: Dict[str, Any]) -> str:
    """Render the markdown report; output depends only on the snapshot"""
    summary = snapshot["summary"]
    organizations = snapshot["organizations"]

    lines = [
        "# Enterprise User Report",
        "",
        f"**Generated:** {format_date(snapshot['generatedAt'])}  ",
    ]
    labels = list(SUMMARY_LABELS.items())
    for idx, (key, label) in enumerate(labels):
        trailer = "  " if idx < len(labels) - 1 else ""
        lines.append(f"**{label}:** {summary[key]}{trailer}")

    if not snapshot.get("licenseDataAvailable", True):
        lines += ["", "> ⚠️ License data was not available for this run."]

    lines += ["", "---", "", "## 📊 Organization Summary", ""]
    lines += render_summary_table(organizations)
    lines += ["", "---", "", "## 👥 Detailed User Information"]
    for org in organizations:
        lines += render_organization(org)

    return "\n".join(lines) + "\n" + FOOTER


def parse_report_summary(markdown: str) -> Dict[str, int]:
    """Read the summary totals back out of a rendered report"""
    summary = {}
    for key, label in SUMMARY_LABELS.items():
        match = re.search(rf"^\*\*{re.escape(label)}:\*\* (\d+)", markdown, re.MULTILINE)
        if not match:
            raise ValueError(f"'{label}' not found in report")
        summary[key] = int(match.group(1))
    return summary


def main():
    """Main execution function"""
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(levelname)s - %(message)s"
    )

    data_file = os.getenv("USER_DATA_FILE", os.path.join("output", "users-data.json"))
    report_file = os.getenv("REPORT_FILE", os.path.join("output", "issue-content.md"))

    try:
        with open(data_file, encoding="utf-8") as f:
            snapshot = json.load(f)
        report = render_report(snapshot)
    except FileNotFoundError:
        logging.error(f"Data file {data_file} not found")
        sys.exit(1)
    except (ValueError, KeyError) as e:
        logging.error(f"Could not render {data_file}: {e}")
        sys.exit(1)

    directory = os.path.dirname(report_file)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(report_file, "w", encoding="utf-8") as f:
        f.write(report)

    summary = snapshot["summary"]
    logging.info(f"Report written to {report_file}")
    print(
        f"[OK] Report contains {summary['totalOrganizations']} organizations and "
        f"{summary['totalUsers']} users ({summary['totalUniqueUsers']} unique)"
    )


if __name__ == "__main__":
    main()
