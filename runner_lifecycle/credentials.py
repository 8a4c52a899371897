"""
Credential Resolver Module

Reads a runner's token file, decides whether it holds a personal access
token or a registration token, and turns it into a registration token.

Classification uses the token's prefix:

* ``github_pat_`` - fine-grained personal access token
* ``ghp_``        - classic personal access token
* 29 upper-case alphanumeric characters - runner registration token

Anything else is rejected rather than guessed at. Set ``tokenKind`` on the
runner to ``pat`` or ``registration`` to skip classification.
"""

import logging
import re
from pathlib import Path
from typing import Optional

from .config import CredentialKind, RunnerDefinition
from .errors import CredentialError
from .github_api import GitHubAPI

PAT_PREFIXES = ('github_pat_', 'ghp_')
REGISTRATION_TOKEN_PATTERN = re.compile(r'^[A-Z0-9]{29}$')


class RegistrationToken:
    """A token the agent's configure (or remove) step accepts"""

    def __init__(self, value: str, kind: CredentialKind, expires_at: Optional[str] = None):
        self.value = value
        self.kind = kind
        # None when the token came straight from the file
        self.expires_at = expires_at

    def __repr__(self):
        return f"RegistrationToken(kind={self.kind.value}, expires_at={self.expires_at})"


def read_token_file(path: Path) -> str:
    """
    Read exactly one line of secret material

    A single trailing newline is dropped; any other line break fails.

    Raises:
        CredentialError: If the file is unreadable, empty or multi-line
    """
    try:
        content = Path(path).read_text(encoding='utf-8')
    except (OSError, UnicodeDecodeError) as e:
        raise CredentialError.malformed(f"Cannot read token file {path}: {e}") from e

    if content.endswith('\r\n'):
        content = content[:-2]
    elif content.endswith('\n'):
        content = content[:-1]

    if '\n' in content or '\r' in content:
        raise CredentialError.malformed(f"Token file {path} must contain exactly one line")
    if not content.strip():
        raise CredentialError.malformed(f"Token file {path} is empty")
    if content != content.strip():
        raise CredentialError.malformed(f"Token in {path} has leading or trailing whitespace")

    return content


def classify(secret: str, token_kind: str = 'auto') -> CredentialKind:
    """
    Decide what kind of credential a secret is

    Raises:
        CredentialError: If ``token_kind`` is 'auto' and the format is not recognised
    """
    if token_kind != 'auto':
        return CredentialKind(token_kind)
    if secret.startswith(PAT_PREFIXES):
        return CredentialKind.PAT
    if REGISTRATION_TOKEN_PATTERN.match(secret):
        return CredentialKind.REGISTRATION
    raise CredentialError.malformed(
        "Unrecognised token format; set tokenKind to 'pat' or 'registration' for this runner"
    )


class CredentialResolver:
    """Obtain registration tokens from a runner's token file"""

    def __init__(self, github_api: GitHubAPI, logger: logging.Logger):
        """
        Initialize credential resolver

        Args:
            github_api: GitHubAPI used to mint tokens from PATs
            logger: Logger instance
        """
        self.github = github_api
        self.logger = logger

    def credential_kind(self, definition: RunnerDefinition) -> CredentialKind:
        """Classify the current token file content without minting anything"""
        return classify(read_token_file(definition.token_file), definition.token_kind)

    def resolve(self, definition: RunnerDefinition) -> RegistrationToken:
        """
        Resolve the runner's token file into a registration token

        Returns:
            RegistrationToken; minted from the PAT, or the file content as-is

        Raises:
            CredentialError: MALFORMED for bad files, REMOTE_REJECTED for mint failures
        """
        secret = read_token_file(definition.token_file)
        kind = classify(secret, definition.token_kind)

        if kind == CredentialKind.REGISTRATION:
            self.logger.info(f"[{definition.name}] Using registration token from {definition.token_file}")
            self.logger.warning(f"[{definition.name}] Registration tokens expire one hour after creation; "
                                f"use a PAT for runners that re-register")
            return RegistrationToken(secret, kind)

        token, expires_at = self.github.create_registration_token(definition.url, secret)
        return RegistrationToken(token, kind, expires_at)

    def resolve_removal(self, definition: RunnerDefinition) -> RegistrationToken:
        """
        Mint a removal token for explicit deregistration

        Raises:
            CredentialError: UNSUPPORTED if the file holds a registration token
        """
        secret = read_token_file(definition.token_file)
        kind = classify(secret, definition.token_kind)

        if kind != CredentialKind.PAT:
            raise CredentialError(CredentialError.UNSUPPORTED,
                                  "A registration token cannot remove a runner; a PAT is required")

        token, expires_at = self.github.create_removal_token(definition.url, secret)
        return RegistrationToken(token, kind, expires_at)
