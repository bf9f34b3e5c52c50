#!/usr/bin/env python3
"""CLI entry point for stackrun.

Noun-action subcommands, each acting on the most recent matching record:
- stackrun sandbox deploy|destroy|ssh|logs|exec|sql|db-shell|db-dump|db-restore [--slug SLUG]
- stackrun release deploy|redeploy|destroy|ssh|logs|exec|scale|restart|status|sql|db-* [--environment ENV]
- stackrun config validate
- stackrun status
"""

import argparse
import logging
import subprocess
import sys
from importlib import metadata
from pathlib import Path
from typing import Optional

from config import ConfigError, load_config, release_targets
from events import LoggingEventSink
from kubernetes import BootstrapError, DockerBuildError
from providers import ProviderError, cloudflare_client, compute_client
from provisioners import ProvisionError, ReleaseProvisioner, SandboxProvisioner
from provisioners.database import DEFAULT_DUMP_PATH
from provisioners.sandbox import WORKSPACE
from remote.ssh import SSHClient, SSHError
from state import Store

NOUN_COMMANDS = {
    "sandbox": "Development sandboxes (deploy/destroy/ssh/logs/exec/sql/db-*)",
    "release": "Production releases (deploy/redeploy/destroy/ssh/logs/exec/scale/restart/status/sql/db-*)",
    "config": "Configuration (validate)",
    "status": "Count sandboxes and releases",
}

DATABASE_ACTIONS = ('sql', 'db-shell', 'db-dump', 'db-restore')
SANDBOX_ACTIONS = ('deploy', 'destroy', 'ssh', 'logs', 'exec') + DATABASE_ACTIONS
RELEASE_ACTIONS = ('deploy', 'redeploy', 'destroy', 'ssh', 'logs', 'exec', 'scale', 'restart', 'status') + DATABASE_ACTIONS

# Errors reported as a one-line message with exit code 1
HANDLED_ERRORS = (
    ConfigError, SSHError, ProviderError, BootstrapError, DockerBuildError, ProvisionError, ValueError,
)

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


def get_version() -> str:
    try:
        return metadata.version('stackrun')
    except metadata.PackageNotFoundError:
        return 'dev'


def _setup_logging(verbose: bool) -> None:
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


def _common_parser(noun: str, verb: str, description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog=f'stackrun {noun} {verb}', description=description)
    parser.add_argument(
        '--config', '-c',
        help='Path to stackrun.yaml (default: $STACKRUN_CONFIG or ./stackrun.yaml)',
    )
    parser.add_argument(
        '--state',
        help='Path to the state file (default: $STACKRUN_STATE or .states/stackrun.json)',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging',
    )
    return parser


def _state_path(args) -> Optional[Path]:
    return Path(args.state) if args.state else None


def _load(args):
    """Load config and state for an action."""
    config = load_config(args.config)
    store = Store.load(_state_path(args))
    return config, store


def _command_text(parts: list) -> str:
    if parts and parts[0] == '--':
        parts = parts[1:]
    return ' '.join(parts).strip()


def build_provisioner(owner, store, config):
    """Provisioner for owner with clients built from config."""
    compute = compute_client(config.compute) if config.compute else None
    cloudflare = cloudflare_client(config.cloudflare) if config.cloudflare_configured() else None
    provisioner_class = SandboxProvisioner if owner.ref.kind == 'sandbox' else ReleaseProvisioner
    return provisioner_class(owner, store, config, compute, cloudflare=cloudflare, events=LoggingEventSink())


def _interactive_ssh(host: str, private_key: str, command: Optional[str] = None) -> int:
    client = SSHClient(host, private_key)
    with client.key_file() as key_path:
        return subprocess.call(client.interactive_command(key_path, command))


def parse_env_assignments(assignments: Optional[list]) -> dict:
    """KEY=VALUE strings to a dict.

    Raises:
        ValueError: On an entry without '='
    """
    env = {}
    for assignment in assignments or []:
        key, sep, value = assignment.partition('=')
        if not sep or not key:
            raise ValueError(f"Expected KEY=VALUE, got: {assignment}")
        env[key] = value
    return env


def _add_database_arguments(parser: argparse.ArgumentParser, action: str) -> None:
    if action == 'sql':
        parser.add_argument('query', nargs=argparse.REMAINDER, help='SQL to run')
    if action in ('db-dump', 'db-restore'):
        parser.add_argument('--path', default=DEFAULT_DUMP_PATH, help='Dump file inside the app container')


def run_database_action(provisioner, action: str, args, parser, host: str, private_key: str) -> int:
    """Run sql/db-dump/db-restore/db-shell and print the output."""
    if action == 'db-shell':
        return _interactive_ssh(host, private_key, provisioner.db_shell_command())
    if action == 'sql':
        query = _command_text(args.query)
        if not query:
            parser.error('sql requires a query')
        execution = provisioner.sql(query)
    elif action == 'db-dump':
        execution = provisioner.db_dump(args.path)
    else:
        execution = provisioner.db_restore(args.path)
    print(execution.output)
    return 0 if execution.success else 1


def print_ledger(store: Store, owner, lines_per_step: Optional[int] = None) -> None:
    for execution in store.executions_for(owner.ref):
        exit_code = '-' if execution.exit_code is None else execution.exit_code
        print(f"\n--- {execution.label} (exit: {exit_code}) ---")
        lines = store.log_lines(execution.id)
        if lines_per_step is not None:
            lines = lines[:lines_per_step]
        for line in lines:
            print(line.content)


# ─── sandbox ─────────────────────────────────────────────────────

def _find_sandbox(store: Store, slug: Optional[str]):
    sandbox = store.find_sandbox_by_slug(slug) if slug else store.latest_sandbox()
    if sandbox is None:
        raise ProvisionError(f"No sandbox found{f' with slug: {slug}' if slug else ''}")
    return sandbox


def sandbox_main(argv: list) -> int:
    if not argv or argv[0].startswith('-') or argv[0] not in SANDBOX_ACTIONS:
        print("Usage: stackrun sandbox <action> [options]")
        print()
        print(f"Actions: {', '.join(SANDBOX_ACTIONS)}")
        return 0 if not argv else 1

    action, rest = argv[0], argv[1:]
    parser = _common_parser('sandbox', action, f'Sandbox {action}')
    parser.add_argument('--slug', help='Sandbox slug (default: most recent sandbox)')
    if action == 'deploy':
        parser.add_argument('--expose', action='store_true', help='Publish a preview URL through a tunnel')
        parser.add_argument('--env', action='append', metavar='KEY=VALUE',
                            help='Sandbox env var written to .env (repeatable)')
    if action == 'exec':
        parser.add_argument('command', nargs=argparse.REMAINDER, help='Command to run in the workspace')
    _add_database_arguments(parser, action)
    args = parser.parse_args(rest)
    _setup_logging(args.verbose)

    config, store = _load(args)

    if action == 'deploy':
        config.validate()
        config.validate_for_target('sandbox')
        sandbox = store.find_sandbox_by_slug(args.slug) if args.slug else None
        if sandbox is None:
            sandbox = store.create_sandbox(**({'slug': args.slug} if args.slug else {}))
        if args.expose and not sandbox.exposed:
            store.update(sandbox, exposed=True)
        env = parse_env_assignments(args.env)
        if env:
            store.update(sandbox, env={**sandbox.env, **env})
        print(f"Sandbox: {sandbox.slug} ({sandbox.branch})")
        provisioner = build_provisioner(sandbox, store, config)
        provisioner.provision()
        print(f"URL: {provisioner.preview_url() or '-'}")
        print(f"SSH: stackrun sandbox ssh --slug {sandbox.slug}")
        return 0

    sandbox = _find_sandbox(store, args.slug)

    if action == 'destroy':
        print(f"Destroying {sandbox.slug}...")
        build_provisioner(sandbox, store, config).deprovision()
        print("Done.")
        return 0

    if action == 'logs':
        print_ledger(store, sandbox)
        return 0

    provisioner = build_provisioner(sandbox, store, config)
    ip = provisioner.server_ip()
    if not ip or not sandbox.ssh_keys_present():
        raise ProvisionError(f"Sandbox {sandbox.slug} has no reachable server")

    if action == 'ssh':
        return _interactive_ssh(ip, sandbox.ssh_private_key)

    if action in DATABASE_ACTIONS:
        provisioner.connect(ip)
        return run_database_action(provisioner, action, args, parser, ip, sandbox.ssh_private_key)

    command = _command_text(args.command)
    if not command:
        parser.error('exec requires a command')
    provisioner.connect(ip)
    execution = provisioner.run(f"cd {WORKSPACE} && {command}", raise_on_error=False)
    print(execution.output)
    return 0 if execution.success else 1


# ─── release ─────────────────────────────────────────────────────

def _find_release(store: Store, environment: Optional[str], deployed: bool = True):
    candidates = [r for r in store.releases(environment) if r.deployed or not deployed]
    if not candidates:
        what = 'deployed release' if deployed else 'release'
        raise ProvisionError(f"No {what}{f' for {environment}' if environment else ''}")
    return candidates[-1]


def release_main(argv: list) -> int:
    if not argv or argv[0].startswith('-') or argv[0] not in RELEASE_ACTIONS:
        print("Usage: stackrun release <action> [options]")
        print()
        print(f"Actions: {', '.join(RELEASE_ACTIONS)}")
        return 0 if not argv else 1

    action, rest = argv[0], argv[1:]
    parser = _common_parser('release', action, f'Release {action}')
    parser.add_argument('--environment', '-e', help='Environment (default: production for deploy)')
    if action == 'deploy':
        parser.add_argument('--branch', '-b', default='main', help='Git branch to deploy')
    if action in ('logs', 'exec', 'scale', 'restart', 'status'):
        parser.add_argument('--process', '-p', default='web', help='Process name')
    if action == 'logs':
        parser.add_argument('--tail', type=int, default=100, help='Number of lines')
    if action == 'scale':
        parser.add_argument('replicas', type=int, help='Replica count')
    if action == 'exec':
        parser.add_argument('command', nargs=argparse.REMAINDER, help='Command to run in the pod')
    _add_database_arguments(parser, action)
    args = parser.parse_args(rest)
    _setup_logging(args.verbose)

    config, store = _load(args)

    if action == 'deploy':
        environment = args.environment or 'production'
        config.validate()
        config.validate_for_target(release_targets(environment))
        release = store.create_release(environment=environment, branch=args.branch)
        print(f"Release: {release.id} ({environment})")
        provisioner = build_provisioner(release, store, config)
        provisioner.provision()
        print(f"URL: {provisioner.url() or '-'}")
        print(f"SSH: stackrun release ssh --environment {environment}")
        return 0

    if action == 'destroy':
        release = _find_release(store, args.environment, deployed=False)
        print(f"Destroying release {release.id}...")
        build_provisioner(release, store, config).deprovision()
        print("Done.")
        return 0

    release = _find_release(store, args.environment)
    provisioner = build_provisioner(release, store, config)

    if action == 'redeploy':
        provisioner.redeploy()
        print(f"Redeployed {release.registry_tag}")
        return 0

    if action == 'ssh':
        return _interactive_ssh(release.server_ip, release.ssh_private_key)

    if action in DATABASE_ACTIONS:
        return run_database_action(provisioner, action, args, parser, release.server_ip, release.ssh_private_key)

    if action == 'logs':
        print(provisioner.logs(args.process, tail=args.tail).output)
        return 0

    if action == 'exec':
        command = _command_text(args.command)
        if not command:
            parser.error('exec requires a command')
        print(provisioner.exec(command, process=args.process).output)
        return 0

    if action == 'scale':
        provisioner.scale(args.process, args.replicas)
        print(f"Scaled {args.process} to {args.replicas} replicas.")
        return 0

    if action == 'restart':
        provisioner.restart(args.process)
        print(f"Restarted {args.process}.")
        return 0

    execution = provisioner.rollout_status(args.process)
    print(execution.output)
    return 0


# ─── config / status ─────────────────────────────────────────────

def config_main(argv: list) -> int:
    if not argv or argv[0] != 'validate':
        print("Usage: stackrun config validate [--config PATH] [--target TARGET]")
        return 0 if not argv else 1
    parser = _common_parser('config', 'validate', 'Validate configuration')
    parser.add_argument('--target', help="Also check target-keyed values, e.g. 'sandbox' or 'staging'")
    args = parser.parse_args(argv[1:])
    _setup_logging(args.verbose)

    config = load_config(args.config)
    config.validate()
    if args.target:
        target = 'sandbox' if args.target == 'sandbox' else release_targets(args.target)
        config.validate_for_target(target)
    print("Configuration valid.")
    if config.has_storage():
        print(f"Storage: {config.storage.subdomain}")  # type: ignore[union-attr]
    return 0


def status_main(argv: list) -> int:
    parser = argparse.ArgumentParser(prog='stackrun status', description='Show deployment status')
    parser.add_argument('--state', help='Path to the state file')
    args = parser.parse_args(argv)
    store = Store.load(_state_path(args))
    print(f"Releases: {len(store.releases())}")
    print(f"Sandboxes: {len(store.sandboxes())}")
    return 0


def print_usage():
    print(f"stackrun {get_version()}")
    print()
    print("Usage: stackrun <noun> <action> [options]")
    print()
    print("Commands:")
    for noun, desc in NOUN_COMMANDS.items():
        print(f"  {noun:<12} {desc}")
    print()
    print("Examples:")
    print("  stackrun sandbox deploy --expose")
    print("  stackrun sandbox exec --slug a1b2c3 -- bin/rails test")
    print("  stackrun release deploy --environment staging")
    print("  stackrun release scale --environment staging 3")


def dispatch_noun(noun: str, argv: list) -> int:
    handlers = {
        'sandbox': sandbox_main,
        'release': release_main,
        'config': config_main,
        'status': status_main,
    }
    try:
        return handlers[noun](argv)
    except HANDLED_ERRORS as e:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


def main(argv: Optional[list] = None) -> int:
    """CLI entry point."""
    argv = sys.argv[1:] if argv is None else argv
    if not argv or argv[0] in ('-h', '--help'):
        print_usage()
        return 0
    if argv[0] == '--version':
        print(f"stackrun {get_version()}")
        return 0
    if argv[0] not in NOUN_COMMANDS:
        print(f"Error: Unknown command '{argv[0]}'")
        print_usage()
        return 1
    return dispatch_noun(argv[0], argv[1:])


if __name__ == '__main__':
    sys.exit(main())
