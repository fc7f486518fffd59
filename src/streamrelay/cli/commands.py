import os
from datetime import datetime
from typing import Optional

from streamrelay.api.client import RelayClient as Client
from streamrelay.api.models import CleanupReport, SessionInfo, StreamStatsResponse
from streamrelay.models import StreamFormat


os.system("")  # Enables some ANSI codes on Windows machines

GREEN = "\033[32m"
YELLOW = "\033[33m"
BOLD = "\033[1m"
RESET = "\033[0m"

_YES = frozenset({"y", "yes", "t", "true", "on", "1"})


def confirm(question: str) -> bool:
    """Prompts for a yes/no answer; anything but a clear yes counts as no."""
    return input(f"{question} (yes/no) ").strip().lower() in _YES


def print_response(http_code: int) -> None:
    """
    Prints a generic response to stdout based on the given HTTP status code.

    Any code other than 200 will result in a warning-style message.
    """
    if http_code == 200:
        print(f"{GREEN}Request was successful!{RESET}")
    else:
        print(
            f"{YELLOW}HTTP response code {http_code}!{RESET} "
            f"Please check the relay node log for details."
        )


async def show_status(client: Client) -> None:
    """Requests the system stats of the relay node and prints them."""
    status, data = await client.get_system_stats()
    if status == 200:
        print(data.model_dump_json(indent=4))
    else:
        print_response(status)


async def show_health(client: Client) -> None:
    status, data = await client.get_health()
    if status != 200:
        print_response(status)
        return
    color = GREEN if data.status == "ok" else YELLOW
    print(f"{color}{BOLD}{data.status.upper()}{RESET} (version {data.version})")
    print(f"Active streams: {data.active_streams}")
    print(f"Failed streams: {data.failed_streams}")
    print(f"Free buffer space: {data.buffer_free_space_mb} MB")
    for problem in data.problems:
        print(f"{YELLOW}Problem:{RESET} {problem}")


async def list_streams(client: Client) -> None:
    streams = await client.get_streams()
    if streams is None:
        print(f"{YELLOW}Could not retrieve stream list!{RESET}")
        return
    if not streams:
        print("No streams.")
        return
    list_sessions(*streams)


def list_sessions(*sessions: SessionInfo) -> None:
    """
    Prints a pretty table of the provided sessions to stdout.

    Listing includes ID, status, format, clients, bandwidth and source URL.
    """
    # "relay_" followed by 16 hex digits
    id_length = 6 + 16
    status_length = 8
    header = (
        f"{'Stream ID':{id_length}} | {'Status':{status_length}} | "
        f"Fmt | Clients | {'kbit/s':>9} | Source"
    )
    print()
    print(header)
    print("-" * len(header))
    for session in sessions:
        print(
            f"{session.stream_id:{id_length}} | {session.status.value:{status_length}} | "
            f"{session.format.value:3} | {session.client_count:7} | "
            f"{session.bandwidth_kbps:9.1f} | {session.source_url}"
        )


async def show_stream(client: Client, stream_id: str) -> None:
    """Requests details about one session and prints them."""
    status, data = await client.get_stream(stream_id)
    if status == 200:
        print(data.model_dump_json(indent=4))
    else:
        print_response(status)


async def create_stream(
    client: Client,
    url: str,
    stream_format: StreamFormat = StreamFormat.ts,
) -> None:
    status, data = await client.create_stream(url, stream_format)
    if status != 200:
        print_response(status)
        return
    print(
        f"{GREEN}Stream {BOLD}{data.stream_id}{RESET}{GREEN} "
        f"is {data.status.value}.{RESET}"
    )


async def stop_stream(
    client: Client,
    stream_id: str,
    force: bool = False,
    *,
    yes_all: bool = False,
) -> None:
    """
    Requests stopping one session.

    Args:
        client:
            The `RelayClient` instance to use for making the request.
        stream_id:
            ID of the session to stop
        force (optional):
            If `True`, the session is stopped even if clients are attached;
            otherwise nothing is stopped while it has any.
        yes_all (optional):
            If `False` (default), forcing the stop must be confirmed first.
    """
    if force:
        if not yes_all and not confirm("Attached clients will be disconnected. Proceed?"):
            print("Aborted.")
            return
    else:
        status, info = await client.get_stream(stream_id)
        if status != 200:
            print_response(status)
            return
        if info.client_count > 0:
            print(
                f"{YELLOW}{info.client_count} client(s) still attached to {stream_id}.{RESET} "
                f"Use the command with the {BOLD}--force{RESET} flag to stop it anyway."
            )
            return
    status, data = await client.stop_stream(stream_id)
    if status != 200:
        print_response(status)
        return
    if data.stopped:
        print(f"{GREEN}Stream {stream_id} stopped.{RESET}")
    else:
        print(
            f"{YELLOW}Stream {stream_id} could not be stopped!{RESET} "
            f"Please check the relay node log for details."
        )


async def stop_all_streams(client: Client, force: bool = False, *, yes_all: bool = False) -> None:
    """
    Requests stopping every session.

    Unless `force` or `yes_all` is set, this must be confirmed first.
    """
    if not (force or yes_all) and not confirm(
        "You are about to stop every stream and disconnect all clients.\nProceed?"
    ):
        print("Aborted.")
        return
    status, data = await client.stop_all_streams()
    if status == 200:
        print(f"{GREEN}Stopped {data.stopped} streams.{RESET}")
    else:
        print_response(status)


async def restart_stream(client: Client, stream_id: str, *, yes_all: bool = False) -> None:
    if not yes_all and not confirm(
        "Attached clients will be disconnected. Proceed?"
    ):
        print("Aborted.")
        return
    status, data = await client.restart_stream(stream_id)
    if status != 200:
        print_response(status)
        return
    print(f"{GREEN}Restarted as {BOLD}{data.stream_id}{RESET}{GREEN}.{RESET}")


async def cleanup(client: Client, grace_seconds: Optional[float] = None) -> None:
    status, data = await client.cleanup(grace_seconds)
    if status != 200:
        print_response(status)
        return
    print_cleanup_report(data)


def print_cleanup_report(report: CleanupReport) -> None:
    if report.total_removed == 0:
        print("No streams removed.")
    for label, stream_ids in (
        ("Idle", report.stopped),
        ("Orphaned", report.orphaned),
        ("Failed", report.failed),
    ):
        if stream_ids:
            print(f"{label} streams removed: {', '.join(stream_ids)}")
    print(f"Clients expired: {report.clients_expired}")
    print(f"Buffer directories removed: {report.buffer_dirs_removed}")
    print(f"Segments removed: {report.segments_removed}")
    print(f"Temporary files removed: {report.temp_files_removed}")


async def show_stream_stats(client: Client, stream_id: str, hours: float = 24.) -> None:
    status, data = await client.get_stream_stats(stream_id, hours)
    if status != 200:
        print_response(status)
        return
    print_stream_stats(data)


def print_stream_stats(data: StreamStatsResponse) -> None:
    peak = data.peak
    print(f"{BOLD}Last {data.hours:g} hours{RESET} ({peak.total_data_points} data points)")
    print(f"Peak clients: {peak.peak_clients} (avg. {peak.avg_clients})")
    print(f"Peak bandwidth: {peak.peak_bandwidth} kbit/s (avg. {peak.avg_bandwidth})")
    if not data.hourly:
        return
    print()
    print(f"{'Hour':16} | {'Clients':>12} | {'kbit/s':>19}")
    for row in data.hourly:
        hour = datetime.fromtimestamp(row.hour).strftime("%Y-%m-%d %H:%M")
        print(
            f"{hour:16} | {row.avg_clients:6.1f} / {row.max_clients:3} | "
            f"{row.avg_bandwidth:9.1f} / {row.max_bandwidth:7.1f}"
        )
