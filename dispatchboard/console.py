"""
DispatchBoard Console - operator command line

Signs in, keeps the board reconciled in the background and runs whatever the
operator types through the engine.

Usage:
    dispatchboard --user jsmith
    dispatchboard --user jsmith --api-url http://127.0.0.1:8001/rpc --alias "MEDIC 1=M1"
    dispatchboard --user jsmith --debug

Console-only commands (everything else goes to the board):
    :accept <UNIT>    adopt the server record after a conflict
    :discard <UNIT>   drop the rejected change
    :focus on|off     simulate window focus
    :status           liveness, undo stack, open conflicts
    :addr [PREFIX]    recent destinations
    :quit
"""

import argparse
import asyncio
import getpass
import logging
from typing import Dict, List

from .config import ClientConfig
from .engine import DispatchEngine
from .fingerprint import ChangeSet
from .local_store import LocalStore
from .reporting import Outcome

logger = logging.getLogger(__name__)

PROMPT = 'CMD> '


def print_outcome(outcome: Outcome):
    marker = '' if outcome.ok else f"[{outcome.kind}] "
    print(f"{marker}{outcome.message}")
    if outcome.current is not None:
        c = outcome.current
        print(f"    NOW: {c.status or '?'} BY {c.updated_by or '?'} AT {c.revision_marker or '?'}"
              f" - :accept {outcome.unit_id} OR :discard {outcome.unit_id}")


def print_changes(changes: ChangeSet):
    print(f"    board updated: {', '.join(changes.changed_sections())}")


def parse_aliases(values: List[str]) -> Dict[str, str]:
    """"MEDIC 1=M1" -> {"MEDIC 1": "M1"}"""
    aliases = {}
    for value in values or []:
        label, sep, unit_id = value.partition('=')
        if not sep or not label.strip() or not unit_id.strip():
            raise argparse.ArgumentTypeError(f"Bad alias {value!r}, expected LABEL=UNIT")
        aliases[label.strip()] = unit_id.strip()
    return aliases


async def handle_local(engine: DispatchEngine, line: str) -> bool:
    """Console-only commands. Returns False when the operator quits."""
    parts = line[1:].split()
    command = parts[0].lower() if parts else ''
    arg = ' '.join(parts[1:])

    if command in ('quit', 'q', 'exit'):
        return False
    if command == 'accept' and arg:
        print_outcome(engine.accept_conflict(arg))
    elif command == 'discard' and arg:
        print_outcome(engine.discard_conflict(arg))
    elif command == 'focus' and arg.lower() in ('on', 'off'):
        engine.set_focus(arg.lower() == 'on')
        print(f"    focus {arg.lower()}")
    elif command == 'status':
        for key, value in engine.status_line().items():
            print(f"    {key}: {value}")
    elif command == 'addr' and engine.store is not None:
        for address in engine.store.address_history(engine.context.operator, arg):
            print(f"    {address}")
    else:
        print("    :accept <UNIT> | :discard <UNIT> | :focus on|off | :status | :addr [PREFIX] | :quit")
    return True


async def repl(engine: DispatchEngine):
    loop = asyncio.get_running_loop()
    while True:
        try:
            line = await loop.run_in_executor(None, input, PROMPT)
        except EOFError:
            break
        line = line.strip()
        if not line:
            continue
        if line.startswith(':'):
            if not await handle_local(engine, line):
                break
            continue
        await engine.submit(line)


async def run(config: ClientConfig, username: str, password: str, role: str):
    store = LocalStore.at_path(config.store_path)
    engine = DispatchEngine(config, store=store, on_change=print_changes)
    engine.reporter.add_sink(print_outcome)

    async with engine:
        outcome = await engine.login(username, password, role)
        if not outcome.ok:
            return 1
        engine.start()
        await repl(engine)
        await engine.logout()
        print(f"\nStats: {engine.client.stats} {engine.reconciler.stats}")
    return 0


def main():
    defaults = ClientConfig.from_env()

    parser = argparse.ArgumentParser(description='DispatchBoard operator console')
    parser.add_argument('--api-url', default=defaults.api_url, help=f'Board API URL (default: {defaults.api_url})')
    parser.add_argument('--api-key', default=defaults.api_key, help='API key sent with every call')
    parser.add_argument('--user', required=True, help='Operator username')
    parser.add_argument('--password', default=None, help='Password (prompted if omitted)')
    parser.add_argument('--role', default='DISPATCH', help='Sign-in role (default: DISPATCH)')
    parser.add_argument('--store', default=defaults.store_path, help=f'Local store (default: {defaults.store_path})')
    parser.add_argument('--poll', type=float, default=defaults.poll_focused, help='Focused poll interval, seconds')
    parser.add_argument('--poll-unfocused', type=float, default=defaults.poll_unfocused,
                        help='Unfocused poll interval, seconds')
    parser.add_argument('--timeout', type=float, default=defaults.timeout, help='HTTP timeout, seconds')
    parser.add_argument('--alias', action='append', default=[], help='Unit shorthand LABEL=UNIT (repeatable)')
    parser.add_argument('--no-legacy-tags', action='store_true', help='Do not render note tags into note text')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )

    try:
        aliases = parse_aliases(args.alias)
    except argparse.ArgumentTypeError as e:
        parser.error(str(e))

    config = ClientConfig(
        api_url=args.api_url,
        api_key=args.api_key,
        timeout=args.timeout,
        poll_focused=args.poll,
        poll_unfocused=args.poll_unfocused,
        store_path=args.store,
        legacy_note_tags=defaults.legacy_note_tags and not args.no_legacy_tags,
        unit_aliases=aliases,
    )
    password = args.password if args.password is not None else getpass.getpass('Password: ')

    try:
        code = asyncio.run(run(config, args.user, password, args.role))
    except KeyboardInterrupt:
        print("\nShutting down...")
        code = 0
    raise SystemExit(code)


if __name__ == '__main__':
    main()
