"""Checks whether a newer yt-dlp release than the installed one exists."""
import logging
import json
from typing import Any, Dict, Optional

import requests
from packaging.version import parse, InvalidVersion

from .constants import YT_DLP_RELEASES_API_URL, REQUEST_HEADERS, REQUEST_TIMEOUTS


class YtDlpUpdateChecker:
    """Compares the installed yt-dlp version with the latest GitHub release."""

    def __init__(self, api_url: str = YT_DLP_RELEASES_API_URL, session: Optional[requests.Session] = None):
        """
        Initializes the YtDlpUpdateChecker.

        Args:
            api_url: The GitHub "latest release" endpoint.
            session: An optional requests session, mainly for tests.
        """
        self.api_url = api_url
        self.session = session or requests.Session()
        self.logger = logging.getLogger(__name__)

    def check(self, installed_version: str) -> Dict[str, Any]:
        """
        Fetches the latest release info from GitHub and compares versions.

        Blocking; call it from a worker thread. Network errors, parsing errors,
        and unexpected API responses are reported in the result, never raised.

        Returns:
            A dict with 'installed', 'latest', 'update_available' and, on failure, 'error'.
        """
        result: Dict[str, Any] = {'installed': installed_version, 'latest': None, 'update_available': False}
        self.logger.info("Checking for yt-dlp updates...")
        latest_version_str = ""  # Initialize to prevent potential unbound error
        try:
            response = self.session.get(self.api_url, headers=REQUEST_HEADERS, timeout=REQUEST_TIMEOUTS)
            response.raise_for_status()

            data = response.json()
            if not isinstance(data, dict):
                self.logger.warning(f"Unexpected API response type: {type(data)}")
                result['error'] = "Unexpected API response"
                return result

            latest_version_str = data.get('tag_name')
            if not latest_version_str:
                self.logger.warning("Could not find version tag in API response.")
                result['error'] = "No version tag in API response"
                return result

            # Strip a leading 'v' if it exists, for cleaner parsing
            if latest_version_str.startswith('v'):
                latest_version_str = latest_version_str[1:]
            result['latest'] = latest_version_str
            result['url'] = data.get('html_url')

            latest_version = parse(latest_version_str)
            current_version = parse(installed_version)

            self.logger.info(f"Installed yt-dlp: {current_version}, latest release: {latest_version}")
            result['update_available'] = latest_version > current_version

        except requests.exceptions.RequestException as e:
            status_code = f" (Status: {e.response.status_code})" if hasattr(e, 'response') and e.response is not None else ""
            self.logger.warning(f"Failed to check for updates (network error): {e}{status_code}")
            result['error'] = f"Network error: {e}"
        except (InvalidVersion, KeyError, TypeError, json.JSONDecodeError) as e:
            self.logger.warning(f"Could not compare versions: {e}")
            if latest_version_str:
                self.logger.warning(f"Version string was: '{latest_version_str}'")
            result['error'] = f"Could not compare versions: {e}"
        return result
