"""
Registration State Module

Tracks which configuration a runner was last registered with, so a
restart with unchanged configuration skips the configure step and any
change that affects the runner's remote identity forces re-registration.
"""

import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

from .config import CredentialKind, RunnerDefinition
from .errors import WorkspaceError

FINGERPRINT_FILE = '.fingerprint.json'
# Written by the agent's configure step; deleting it forces re-registration
RUNNER_ARTIFACT = '.runner'
AGENT_ARTIFACTS = (RUNNER_ARTIFACT, '.credentials', '.credentials_rsaparams')


def fingerprint_inputs(definition: RunnerDefinition, credential_kind: CredentialKind) -> Dict:
    """Fields of a definition that change the runner's remote identity"""
    return {
        'url': definition.url,
        'name': definition.name,
        'runner_group': definition.runner_group,
        'labels': definition.labels,
        'work_dir': str(definition.work_dir) if definition.work_dir is not None else None,
        'ephemeral': definition.ephemeral,
        'credential_kind': credential_kind.value,
    }


def compute_fingerprint(definition: RunnerDefinition, credential_kind: CredentialKind) -> str:
    """SHA-256 of the canonical JSON of the identity fields"""
    canonical = json.dumps(fingerprint_inputs(definition, credential_kind), sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(canonical.encode('utf-8')).hexdigest()


def needs_reregistration(definition: RunnerDefinition, previous: Optional[str],
                         credential_kind: CredentialKind) -> bool:
    """True when there is no previous fingerprint or it differs from the current one"""
    if previous is None:
        return True
    return previous != compute_fingerprint(definition, credential_kind)


def write_json_atomic(path: Path, payload: Dict):
    """Write JSON via a temp file in the same directory and rename it into place"""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as handle:
            handle.write(json.dumps(payload, indent=2, sort_keys=True) + '\n')
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, path)
    finally:
        if os.path.exists(temp_path):
            os.unlink(temp_path)


class RegistrationStateTracker:
    """Persist and compare one runner's registration fingerprint"""

    def __init__(self, state_dir: Path, logger: logging.Logger):
        """
        Initialize tracker

        Args:
            state_dir: The runner's own state directory
            logger: Logger instance
        """
        self.state_dir = Path(state_dir)
        self.logger = logger

    @property
    def fingerprint_path(self) -> Path:
        return self.state_dir / FINGERPRINT_FILE

    def load(self) -> Optional[str]:
        """
        Load the stored fingerprint

        Returns:
            Fingerprint digest, or None if absent, unreadable or corrupt
        """
        path = self.fingerprint_path
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding='utf-8'))
        except (OSError, UnicodeDecodeError, ValueError) as e:
            self.logger.warning(f"Ignoring unreadable fingerprint {path}: {e}")
            return None

        digest = data.get('fingerprint') if isinstance(data, dict) else None
        if not isinstance(digest, str) or len(digest) != 64:
            self.logger.warning(f"Ignoring corrupt fingerprint {path}")
            return None
        return digest

    def registration_required(self, definition: RunnerDefinition, credential_kind: CredentialKind) -> bool:
        """
        Decide whether the configure step has to run before starting the agent

        Also true when the agent's own registration artifact is gone, even
        if the stored fingerprint still matches.
        """
        previous = self.load()
        if needs_reregistration(definition, previous, credential_kind):
            reason = 'no previous registration' if previous is None else 'configuration changed'
            self.logger.info(f"[{definition.name}] Registration required: {reason}")
            return True
        if not (self.state_dir / RUNNER_ARTIFACT).exists():
            self.logger.info(f"[{definition.name}] Registration required: {RUNNER_ARTIFACT} is missing")
            return True
        return False

    def commit(self, definition: RunnerDefinition, credential_kind: CredentialKind) -> str:
        """
        Record a successful registration

        Only call after the configure step has succeeded.

        Returns:
            The stored fingerprint digest
        """
        digest = compute_fingerprint(definition, credential_kind)
        write_json_atomic(self.fingerprint_path, {
            'fingerprint': digest,
            'inputs': fingerprint_inputs(definition, credential_kind),
        })
        self.logger.debug(f"[{definition.name}] Stored registration fingerprint {digest[:12]}")
        return digest

    def clear(self):
        """Forget the registration (runner deregistered)"""
        try:
            self.fingerprint_path.unlink()
        except FileNotFoundError:
            pass

    def discard_agent_registration(self):
        """
        Remove the agent's local registration files

        The agent refuses to configure over an existing registration, so
        these must go before a changed runner is configured again.

        Raises:
            WorkspaceError: If a file exists but cannot be removed
        """
        removed = []
        for name in AGENT_ARTIFACTS:
            path = self.state_dir / name
            try:
                path.unlink()
                removed.append(name)
            except FileNotFoundError:
                continue
            except OSError as e:
                raise WorkspaceError(f"Failed to remove {path}: {e}") from e
        if removed:
            self.logger.info(f"Discarded local registration files: {', '.join(removed)}")
