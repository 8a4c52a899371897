#!/usr/bin/env python3
"""
CLI Module

Command-line interface for the runner lifecycle manager.
"""

import argparse
import sys
from pathlib import Path

from .config import ManagerSettings, load_definitions
from .errors import ConfigError, RunnerLifecycleError
from .manager import RunnerManager, check_unique_names


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='runner-lifecycle',
        description='GitHub Actions Self-Hosted Runner Lifecycle Manager',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Check the definitions file
  runner-lifecycle --definitions runners.yaml validate

  # One service invocation for a single runner (what launchd runs)
  runner-lifecycle run --name runner1

  # Keep an ephemeral runner cycling without a service supervisor
  runner-lifecycle run --name runner1 --loop

  # Run every enabled runner once, concurrently
  runner-lifecycle reconcile

  # Show status
  runner-lifecycle status

  # Remove a runner's registration and local state
  runner-lifecycle deregister --name runner1

  # Write launchd job definitions
  runner-lifecycle render-service --output-dir /Library/LaunchDaemons
        """
    )
    parser.add_argument('--definitions', type=Path,
                        help='Runner definitions YAML file (default: $RUNNER_DEFINITIONS_FILE or ./runners.yaml)')
    parser.add_argument('--env-file', type=Path, default=Path('.env'),
                        help='Environment file with manager settings (default: .env)')

    subparsers = parser.add_subparsers(dest='command', help='Command to execute')

    subparsers.add_parser('validate', help='Validate settings and runner definitions')

    run_parser = subparsers.add_parser('run', help='Register (if needed) and run one runner')
    run_parser.add_argument('--name', required=True, help='Runner name')
    run_parser.add_argument('--loop', action='store_true',
                            help='Restart ephemeral runners in-process after each job')

    subparsers.add_parser('reconcile', help='Run every enabled runner once')

    subparsers.add_parser('status', help='Show runner status')

    deregister_parser = subparsers.add_parser('deregister', help='Remove a runner registration and its state')
    deregister_parser.add_argument('--name', required=True, help='Runner name')

    render_parser = subparsers.add_parser('render-service', help='Render launchd job definitions')
    render_parser.add_argument('--output-dir', type=Path, help='Write <label>.plist files here instead of stdout')
    render_parser.add_argument('--python', help='Interpreter for the job (default: this one)')

    return parser


def main(argv=None) -> int:
    """Main entry point for CLI"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    # Load configuration
    settings = ManagerSettings(args.env_file)
    if args.definitions:
        settings.definitions_file = args.definitions

    errors = settings.validate()
    if errors:
        print("Configuration errors:", file=sys.stderr)
        for error in errors:
            print(f"  - {error}", file=sys.stderr)
        return 1

    try:
        definitions = load_definitions(settings.definitions_file, settings)
        check_unique_names(definitions)
    except RunnerLifecycleError as e:
        print(str(e), file=sys.stderr)
        return 1

    if args.command == 'validate':
        enabled = sum(1 for d in definitions if d.enable)
        print(f"{len(definitions)} runner definition(s) OK ({enabled} enabled)")
        return 0

    manager = RunnerManager(settings, definitions)

    try:
        if args.command == 'run':
            manager.install_signal_handlers()
            result = manager.run_one(args.name, loop=args.loop)
            return 0 if result.clean else 1

        elif args.command == 'reconcile':
            manager.install_signal_handlers()
            outcomes = manager.reconcile()
            return 0 if all(outcome.ok for outcome in outcomes.values()) else 1

        elif args.command == 'status':
            manager.print_status()
            return 0

        elif args.command == 'deregister':
            manager.deregister(args.name)
            return 0

        elif args.command == 'render-service':
            services = manager.render_services(args.python)
            for label, plist in services.items():
                if args.output_dir:
                    args.output_dir.mkdir(parents=True, exist_ok=True)
                    (args.output_dir / f"{label}.plist").write_bytes(plist)
                    print(f"Wrote {args.output_dir / f'{label}.plist'}")
                else:
                    sys.stdout.write(plist.decode('utf-8'))
            return 0

        else:
            parser.print_help()
            return 1

    except KeyError as e:
        print(f"Error: {e.args[0]}", file=sys.stderr)
        return 1
    except ConfigError as e:
        print(str(e), file=sys.stderr)
        return 1
    except RunnerLifecycleError as e:
        manager.logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        manager.request_shutdown()
        return 130


if __name__ == '__main__':
    sys.exit(main())
