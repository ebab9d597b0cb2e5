import re
import logging
import requests
from typing import Optional
from nodelauncher.local import app_globals
from nodelauncher.errors import TransferError

log = logging.getLogger(__name__)


def resolve_release_asset_url(repo: str, asset_pattern: str, api_url: Optional[str] = None) -> str:
    """
    Finds the download URL of the first asset in a repository's latest GitHub
    release whose name matches ``asset_pattern``. Blocking; run it in a thread.

    :param repo: "owner/name" of the repository.
    :param asset_pattern: Regular expression searched in each asset name.
    :param api_url: GitHub API base URL, defaulting to GITHUB_API_URL.
    :return: The asset's browser download URL.
    :raises TransferError: If the lookup fails or no asset matches.
    """
    url = f"{(api_url or app_globals.GITHUB_API_URL).rstrip('/')}/repos/{repo}/releases/latest"
    headers = {"User-Agent": app_globals.USER_AGENT, "Accept": "application/vnd.github+json"}
    try:
        res = requests.get(url, timeout=app_globals.RELEASE_LOOKUP_TIMEOUT, headers=headers)
        res.raise_for_status()
        release = res.json()
    except requests.RequestException as e:
        raise TransferError(f"Failed to fetch latest release for {repo}: {e}", retriable=True) from e
    except ValueError as e:
        raise TransferError(f"Invalid release data for {repo}: {e}") from e

    for asset in release.get("assets", []):
        if re.search(asset_pattern, asset.get("name", "")):
            log.debug(f"Resolved {repo} release {release.get('tag_name')} asset {asset['name']}")
            return asset["browser_download_url"]
    raise TransferError(f"No asset matching '{asset_pattern}' in the latest release of {repo}")
