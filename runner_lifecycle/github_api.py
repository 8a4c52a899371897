"""
GitHub API Module

Handles communication with the GitHub API for minting runner
registration and removal tokens.
"""

import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request
from typing import Dict, Optional, Tuple

from .errors import CredentialError


def runner_scope_path(url: str) -> str:
    """
    Map a repository, organization or enterprise URL to its API path

    Examples:
        https://github.com/owner/repo     -> repos/owner/repo
        https://github.com/owner          -> orgs/owner
        https://github.com/enterprises/e  -> enterprises/e

    Raises:
        ValueError: If the URL has no owner component
    """
    parts = [p for p in urllib.parse.urlparse(url).path.split('/') if p]
    if not parts:
        raise ValueError(f"URL has no owner or repository: {url}")
    if parts[0] == 'enterprises' and len(parts) >= 2:
        return f"enterprises/{parts[1]}"
    if len(parts) == 1:
        return f"orgs/{parts[0]}"
    return f"repos/{parts[0]}/{parts[1]}"


def api_base_for(url: str, default_api_url: str) -> str:
    """GitHub.com uses the public API; anything else is treated as GitHub Enterprise Server"""
    parsed = urllib.parse.urlparse(url)
    if parsed.hostname in (None, 'github.com', 'www.github.com'):
        return default_api_url.rstrip('/')
    return f"{parsed.scheme}://{parsed.netloc}/api/v3"


class GitHubAPI:
    """GitHub API client for runner token management"""

    def __init__(self, api_url: str, timeout: int, logger: logging.Logger):
        """
        Initialize GitHub API client

        Args:
            api_url: API base for github.com URLs (e.g. https://api.github.com)
            timeout: Request timeout in seconds
            logger: Logger instance
        """
        self.api_url = api_url.rstrip('/')
        self.timeout = timeout
        self.logger = logger

    def _make_request(self, url: str, pat: str, method: str = 'GET', data: Optional[Dict] = None) -> Dict:
        """
        Make an authenticated request to the GitHub API

        Raises:
            CredentialError: On HTTP errors (with status) and network failures (without)
        """
        headers = {
            'Authorization': f'token {pat}',
            'Accept': 'application/vnd.github.v3+json',
            'User-Agent': 'runner-lifecycle-manager'
        }

        body = None
        if data:
            body = json.dumps(data).encode('utf-8')
            headers['Content-Type'] = 'application/json'

        req = urllib.request.Request(url, data=body, headers=headers, method=method)

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                return json.loads(response.read().decode('utf-8') or '{}')
        except urllib.error.HTTPError as e:
            error_msg = e.read().decode('utf-8', errors='replace') if e.fp else str(e)
            self.logger.error(f"GitHub API error: {e.code} - {error_msg}")
            message = f"{method} {url} returned HTTP {e.code}"
            if e.code == 404:
                message += (" (check that the runner URL matches the token scope: "
                            "org-wide tokens need an organization URL, not a repository URL)")
            raise CredentialError.remote_rejected(message, status=e.code) from e
        except (urllib.error.URLError, socket.timeout, TimeoutError) as e:
            self.logger.error(f"Request failed: {e}")
            raise CredentialError.remote_rejected(f"{method} {url} failed: {e}") from e
        except ValueError as e:
            raise CredentialError.remote_rejected(f"{method} {url} returned invalid JSON: {e}") from e

    def _token_endpoint(self, runner_url: str, action: str) -> str:
        try:
            scope = runner_scope_path(runner_url)
        except ValueError as e:
            raise CredentialError.malformed(str(e)) from e
        return f"{api_base_for(runner_url, self.api_url)}/{scope}/actions/runners/{action}"

    def create_registration_token(self, runner_url: str, pat: str) -> Tuple[str, Optional[str]]:
        """
        Mint a short-lived registration token

        Args:
            runner_url: Repository, organization or enterprise URL
            pat: Personal access token allowed to manage self-hosted runners

        Returns:
            (token, expires_at) where expires_at is the ISO timestamp GitHub reports
        """
        self.logger.info(f"Obtaining registration token for {runner_url}...")
        response = self._make_request(self._token_endpoint(runner_url, 'registration-token'), pat, method='POST')
        token = response.get('token')
        if not token:
            raise CredentialError.remote_rejected("Registration token response did not contain a token")
        expires_at = response.get('expires_at')
        self.logger.info(f"Registration token obtained (expires: {expires_at})")
        return token, expires_at

    def create_removal_token(self, runner_url: str, pat: str) -> Tuple[str, Optional[str]]:
        """
        Mint a removal token

        Returns:
            (token, expires_at)
        """
        self.logger.info(f"Obtaining removal token for {runner_url}...")
        response = self._make_request(self._token_endpoint(runner_url, 'remove-token'), pat, method='POST')
        token = response.get('token')
        if not token:
            raise CredentialError.remote_rejected("Removal token response did not contain a token")
        return token, response.get('expires_at')
