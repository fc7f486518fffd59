from argparse import ArgumentParser, SUPPRESS
from inspect import signature
from typing import Any

from streamrelay.api.client import RelayClient
from streamrelay.models import StreamFormat
from .commands import (
    cleanup,
    create_stream,
    list_streams,
    restart_stream,
    show_health,
    show_status,
    show_stream,
    show_stream_stats,
    stop_all_streams,
    stop_stream,
)


# CLI parameters:
CMD = 'cli_cmd'
YES = 'yes_all'
SHOW_STATUS = 'status'
LIST = 'list'
SHOW = 'show'
STOP, STOP_ALL, RESTART = 'stop', 'stop-all', 'restart'
CLEANUP = 'cleanup'
STATS = 'stats'
HEALTH = 'health'
CREATE = 'create'
STREAM_ID = 'stream_id'
URL = 'url'


def _add_stream_id_arg(parser: ArgumentParser) -> None:
    parser.add_argument(
        STREAM_ID,
        help="ID of the stream session",
    )


def setup_cli_args(parser: ArgumentParser) -> None:
    parser.add_argument(
        '-y', f'--{YES.replace("_", "-")}',
        action='store_true',
        default=SUPPRESS,
        help="If this flag is set, every confirmation prompt (yes/no) "
             "will automatically be passed with `yes`.",
    )
    subparsers = parser.add_subparsers(
        title="Available CLI commands",
        required=True,
    )

    parser_status = subparsers.add_parser(
        name=SHOW_STATUS,
        help="Print system stats of the relay node.",
    )
    parser_status.set_defaults(**{CMD: show_status})

    parser_health = subparsers.add_parser(
        name=HEALTH,
        help="Print the health status of the relay node.",
    )
    parser_health.set_defaults(**{CMD: show_health})

    parser_list = subparsers.add_parser(
        name=LIST,
        help="List all stream sessions.",
    )
    parser_list.set_defaults(**{CMD: list_streams})

    parser_show = subparsers.add_parser(
        name=SHOW,
        help="Print details about a stream session and its clients.",
    )
    parser_show.set_defaults(**{CMD: show_stream})
    _add_stream_id_arg(parser_show)

    parser_create = subparsers.add_parser(
        name=CREATE,
        help="Start relaying a source without waiting for a client.",
    )
    parser_create.set_defaults(**{CMD: create_stream})
    parser_create.add_argument(
        URL,
        help="URL of the source stream",
    )
    parser_create.add_argument(
        '-f', '--format',
        dest='stream_format',
        type=StreamFormat,
        choices=list(StreamFormat),
        default=StreamFormat.ts,
        help="Output format of the relay (default: ts)",
    )

    parser_stop = subparsers.add_parser(
        name=STOP,
        help="Stop a stream session.",
    )
    parser_stop.set_defaults(**{CMD: stop_stream})
    _add_stream_id_arg(parser_stop)
    parser_stop.add_argument(
        '--force',
        action='store_true',
        help="Stop the session even if clients are still attached.",
    )

    parser_stop_all = subparsers.add_parser(
        name=STOP_ALL,
        help="Stop all stream sessions.",
    )
    parser_stop_all.set_defaults(**{CMD: stop_all_streams})
    parser_stop_all.add_argument(
        '--force',
        action='store_true',
        help="Stop all sessions without asking for confirmation.",
    )

    parser_restart = subparsers.add_parser(
        name=RESTART,
        help="Stop a stream session and start a new one for the same source.",
    )
    parser_restart.set_defaults(**{CMD: restart_stream})
    _add_stream_id_arg(parser_restart)

    parser_cleanup = subparsers.add_parser(
        name=CLEANUP,
        help="Remove idle, orphaned and failed sessions right away.",
    )
    parser_cleanup.set_defaults(**{CMD: cleanup})
    parser_cleanup.add_argument(
        '--grace',
        dest='grace_seconds',
        type=float,
        default=None,
        help="Seconds a session without clients is kept "
             "(default: the node's grace period)",
    )

    parser_stats = subparsers.add_parser(
        name=STATS,
        help="Print peak and hourly stats of a stream session.",
    )
    parser_stats.set_defaults(**{CMD: show_stream_stats})
    _add_stream_id_arg(parser_stats)
    parser_stats.add_argument(
        '--hours',
        type=float,
        default=24.,
        help="How many hours of history to consider (default: 24)",
    )


async def execute_cli_command(**kwargs: Any) -> None:
    run = kwargs.pop(CMD)
    if YES not in signature(run).parameters:
        kwargs.pop(YES, None)  # command never prompts
    async with RelayClient() as client:
        await run(client, **kwargs)
