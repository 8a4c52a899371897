#!/usr/bin/env python3
"""
GitHub Actions Self-Hosted Runner Lifecycle Manager

Keeps configured runners registered and running as system services:
- Registration with tokens minted from a PAT (or a raw registration token)
- Re-registration only when identity-affecting configuration changes
- Ephemeral runners: one job, then a fresh registration on restart
- Clean work directory on every service start
- Multiple runners, each with its own state, work and log directories

Usage:
    python3 runner_manager.py validate            # Check runners.yaml
    python3 runner_manager.py run --name NAME     # One service invocation
    python3 runner_manager.py reconcile           # Run all enabled runners
    python3 runner_manager.py status              # Show status
    python3 runner_manager.py deregister --name NAME
"""

import sys

from runner_lifecycle.cli import main

if __name__ == '__main__':
    sys.exit(main())
