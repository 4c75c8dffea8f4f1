#!/usr/bin/env python3
"""CLI for managing the watcher daemon and talking to it."""
from __future__ import annotations

import argparse
import json
import os
import signal
import subprocess
import sys
import time
from typing import Optional

from watcher import config
from watcher.client import WatcherClient
from watcher.common import LOG_FILE, LOGS_DIR, PID_FILE, STATE_DIR, WATCHER_DIR
from watcher.errors import WatcherError


def get_pid() -> Optional[int]:
    """Get the daemon PID if running."""
    if not PID_FILE.exists():
        return None
    try:
        pid = int(PID_FILE.read_text().strip())
        os.kill(pid, 0)
        # Verify it's actually our daemon (not a reused PID after reboot)
        result = subprocess.run(
            ["ps", "-p", str(pid), "-o", "command="],
            capture_output=True, text=True
        )
        if "watcher" not in result.stdout:
            PID_FILE.unlink(missing_ok=True)
            return None
        return pid
    except (ValueError, ProcessLookupError, PermissionError):
        PID_FILE.unlink(missing_ok=True)
        return None


def _client(args) -> WatcherClient:
    return WatcherClient(session_id=getattr(args, "session_id", None))


def _print_json(data) -> None:
    print(json.dumps(data, indent=2))


# ── Daemon ──────────────────────────────────────────────────────


def cmd_watch(args):
    """Run the daemon in the foreground."""
    from watcher import manager
    manager.main()
    return 0


def cmd_start(args):
    """Start the daemon in the background."""
    pid = get_pid()
    if pid:
        print(f"Daemon already running (PID {pid})")
        return 1

    STATE_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)

    log_fh = open(LOG_FILE, "a")
    process = subprocess.Popen(
        [sys.executable, "-m", "watcher.manager"],
        cwd=WATCHER_DIR,
        stdout=log_fh,
        stderr=subprocess.STDOUT,
        start_new_session=True,  # Detach from terminal
    )
    log_fh.close()  # Popen has duped the fd

    PID_FILE.write_text(str(process.pid))
    print(f"Daemon started (PID {process.pid})")
    print(f"Logs: {LOG_FILE}")
    return 0


def cmd_stop(args):
    """Stop the daemon."""
    pid = get_pid()
    if not pid:
        print("Daemon not running")
        return 1

    print(f"Stopping daemon (PID {pid})...")
    # start_new_session=True in cmd_start makes pgid == pid
    try:
        os.killpg(pid, signal.SIGTERM)
    except ProcessLookupError:
        print("Process already dead")
        PID_FILE.unlink(missing_ok=True)
        return 0
    except PermissionError:
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            print("Process already dead")
            PID_FILE.unlink(missing_ok=True)
            return 0

    for _ in range(10):
        try:
            os.kill(pid, 0)
            time.sleep(0.5)
        except ProcessLookupError:
            break
    else:
        print("Force killing...")
        try:
            os.killpg(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass

    PID_FILE.unlink(missing_ok=True)
    print("Daemon stopped")
    return 0


def cmd_status(args):
    """Show daemon and connection status."""
    pid = get_pid()
    status = _client(args).request("status")
    if args.json:
        _print_json(status)
        return 0

    print(f"Daemon running{f' (PID {pid})' if pid else ''}")
    print(f"Connection: {status['state']}")
    if status.get("phoneNumber"):
        print(f"Phone:      {status['phoneNumber']}")
    if status.get("pairingCode"):
        print(f"Pairing code: {status['pairingCode']}")
    if status.get("lastError"):
        print(f"Last error: {status['lastError']}")
    print(f"Sessions:   {status.get('sessionCount', 0)} (active: {status.get('activeSession') or 'none'})")
    return 0


def cmd_logs(args):
    """Tail the log file."""
    if not LOG_FILE.exists():
        print(f"Log file not found: {LOG_FILE}")
        return 1

    cmd = ["tail"]
    if args.follow:
        cmd.append("-f")
    cmd.extend(["-n", str(args.lines), str(LOG_FILE)])
    try:
        subprocess.run(cmd)
    except KeyboardInterrupt:
        pass
    return 0


# ── Client ──────────────────────────────────────────────────────


def cmd_register(args):
    print(_client(args).register(args.name))
    return 0


def cmd_send(args):
    result = _client(args).send(" ".join(args.message), args.to)
    print(f"Sent to {result['targetJid']}: {result['preview']}")
    return 0


def cmd_send_file(args):
    params = {"filePath": args.path}
    if args.to:
        params["recipient"] = args.to
    if args.caption:
        params["caption"] = args.caption
    result = _client(args).request("send_file", params)
    print(f"Sent {result['fileName']} ({result['fileSize']} bytes) to {result['targetJid']}")
    return 0


def _print_messages(messages) -> None:
    for m in messages:
        print(m["body"])


def cmd_receive(args):
    messages = _client(args).receive(args.source)
    if args.json:
        _print_json(messages)
    else:
        _print_messages(messages)
    return 0


def cmd_wait(args):
    messages = _client(args).wait(args.timeout * 1000)
    if args.json:
        _print_json(messages)
    else:
        _print_messages(messages)
    return 0 if messages else 2


def cmd_login(args):
    print(_client(args).request("login")["message"])
    return 0


def cmd_sessions(args):
    sessions = _client(args).request("sessions")["sessions"]
    if args.json:
        _print_json(sessions)
        return 0
    if not sessions:
        print("No sessions")
    for s in sessions:
        marker = "*" if s["active"] else " "
        pending = f" [{s['pending']} pending]" if s["pending"] else ""
        print(f"{marker} {s['index']:2d}. {s['name']:24s} {s.get('terminalId') or '-':8s} {s['origin']}{pending}")
    return 0


def cmd_switch(args):
    result = _client(args).request("switch", {"session": args.session})
    print(f"Active session: {result['name']}")
    return 0


def cmd_end(args):
    result = _client(args).request("end", {"session": args.session})
    print(f"Ended session: {result['name']}")
    return 0


def cmd_discover(args):
    result = _client(args).request("discover")
    print(f"Alive:      {', '.join(result['alive']) or '-'}")
    print(f"Pruned:     {', '.join(result['pruned']) or '-'}")
    print(f"Discovered: {', '.join(result['discovered']) or '-'}")
    return 0


def cmd_contacts(args):
    params = {"limit": args.limit}
    if args.search:
        params["search"] = args.search
    contacts = _client(args).request("contacts", params)["contacts"]
    if args.json:
        _print_json(contacts)
        return 0
    for c in contacts:
        print(f"{c.get('name') or '-':24s} {c.get('phoneNumber') or '':16s} {c['jid']}")
    return 0


def cmd_chats(args):
    params = {"limit": args.limit}
    if args.search:
        params["search"] = args.search
    chats = _client(args).request("chats", params)["chats"]
    if args.json:
        _print_json(chats)
        return 0
    for c in chats:
        unread = f" ({c['unreadCount']} unread)" if c.get("unreadCount") else ""
        print(f"{c.get('name') or '-':24s} {c['jid']}{unread}")
    return 0


def cmd_history(args):
    messages = _client(args).request("history", {"jid": args.jid, "count": args.count})["messages"]
    if args.json:
        _print_json(messages)
        return 0
    for m in messages:
        who = "me" if m["fromMe"] else "them"
        stamp = time.strftime("%Y-%m-%d %H:%M", time.localtime(m["timestamp"])) if m["timestamp"] else "?"
        print(f"[{stamp}] {who}: {m['text']}")
    return 0


def cmd_tts(args):
    params = {"text": " ".join(args.text)}
    if args.to:
        params["recipient"] = args.to
    if args.voice:
        params["voice"] = args.voice
    result = _client(args).request("tts", params, timeout=300)
    print(f"Voice note sent to {result['targetJid']} ({result['voice']}, {result['bytesSent']} bytes)")
    return 0


def cmd_speak(args):
    params = {"text": " ".join(args.text)}
    if args.voice:
        params["voice"] = args.voice
    _client(args).request("speak", params, timeout=300)
    return 0


def cmd_rename(args):
    print(_client(args).request("rename", {"name": args.name})["name"])
    return 0


def cmd_voice(args):
    params = {"action": "get"}
    if args.default:
        params["defaultVoice"] = args.default
    if args.mode:
        params["voiceMode"] = args.mode == "on"
    if args.local:
        params["localMode"] = args.local == "on"
    if args.persona:
        name, _, voice = args.persona.partition("=")
        if not name or not voice:
            print("Error: --persona takes NAME=VOICE", file=sys.stderr)
            return 1
        params["personas"] = {name: voice}
    if len(params) > 1:
        params["action"] = "set"
    _print_json(_client(args).request("voice_config", params)["config"])
    return 0


def main():
    parser = argparse.ArgumentParser(
        prog="watcher",
        description="Watcher - one messaging connection shared by local sessions",
    )
    parser.add_argument("--session-id", help="Session id to act as (default: $WATCHER_SESSION_ID or tmux pane)")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("watch", help="Run the daemon in the foreground")
    subparsers.add_parser("start", help="Start the daemon in the background")
    subparsers.add_parser("stop", help="Stop the daemon")

    status_parser = subparsers.add_parser("status", help="Show connection status")
    status_parser.add_argument("--json", action="store_true")

    logs_parser = subparsers.add_parser("logs", help="Tail the log file")
    logs_parser.add_argument("-n", "--lines", type=int, default=50, help="Number of lines")
    logs_parser.add_argument("-f", "--follow", action="store_true", help="Follow log output")

    register_parser = subparsers.add_parser("register", help="Register this terminal under a name")
    register_parser.add_argument("name")

    send_parser = subparsers.add_parser("send", help="Send a text message (default: to yourself)")
    send_parser.add_argument("message", nargs="+")
    send_parser.add_argument("--to", help="Contact name, phone number or JID")

    send_file_parser = subparsers.add_parser("send-file", help="Send a file")
    send_file_parser.add_argument("path")
    send_file_parser.add_argument("--to", help="Contact name, phone number or JID")
    send_file_parser.add_argument("--caption")

    receive_parser = subparsers.add_parser("receive", help="Drain queued messages")
    receive_parser.add_argument("--from", dest="source", help="Contact, or 'all' for everything")
    receive_parser.add_argument("--json", action="store_true")

    wait_parser = subparsers.add_parser("wait", help="Block until a message arrives")
    wait_parser.add_argument("-t", "--timeout", type=int, default=120, help="Seconds to wait")
    wait_parser.add_argument("--json", action="store_true")

    subparsers.add_parser("login", help="Start pairing (prints code via status)")

    sessions_parser = subparsers.add_parser("sessions", help="List registered sessions")
    sessions_parser.add_argument("--json", action="store_true")

    switch_parser = subparsers.add_parser("switch", help="Make a session active")
    switch_parser.add_argument("session", help="Index, name or session id")

    end_parser = subparsers.add_parser("end", help="Remove a session")
    end_parser.add_argument("session", help="Index, name or session id")

    subparsers.add_parser("discover", help="Prune dead sessions and adopt labelled terminals")

    contacts_parser = subparsers.add_parser("contacts", help="List or search contacts")
    contacts_parser.add_argument("search", nargs="?")
    contacts_parser.add_argument("--limit", type=int, default=50)
    contacts_parser.add_argument("--json", action="store_true")

    chats_parser = subparsers.add_parser("chats", help="List or search chats")
    chats_parser.add_argument("search", nargs="?")
    chats_parser.add_argument("--limit", type=int, default=50)
    chats_parser.add_argument("--json", action="store_true")

    history_parser = subparsers.add_parser("history", help="Show recent messages of a chat")
    history_parser.add_argument("jid", help="Contact name, phone number or JID")
    history_parser.add_argument("-n", "--count", type=int, default=50)
    history_parser.add_argument("--json", action="store_true")

    tts_parser = subparsers.add_parser("tts", help="Send text as a voice note")
    tts_parser.add_argument("text", nargs="+")
    tts_parser.add_argument("--to", help="Contact name, phone number or JID")
    tts_parser.add_argument("--voice", help="Voice id or persona name")

    speak_parser = subparsers.add_parser("speak", help="Speak text on this machine")
    speak_parser.add_argument("text", nargs="+")
    speak_parser.add_argument("--voice", help="Voice id or persona name")

    rename_parser = subparsers.add_parser("rename", help="Rename this session")
    rename_parser.add_argument("name")

    voice_parser = subparsers.add_parser("voice", help="Show or change voice settings")
    voice_parser.add_argument("--default", help="Default voice id")
    voice_parser.add_argument("--mode", choices=["on", "off"], help="Reply with voice notes")
    voice_parser.add_argument("--local", choices=["on", "off"], help="Speak replies on this machine")
    voice_parser.add_argument("--persona", metavar="NAME=VOICE", help="Add or change a persona")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    commands = {
        "watch": cmd_watch,
        "start": cmd_start,
        "stop": cmd_stop,
        "status": cmd_status,
        "logs": cmd_logs,
        "register": cmd_register,
        "send": cmd_send,
        "send-file": cmd_send_file,
        "receive": cmd_receive,
        "wait": cmd_wait,
        "login": cmd_login,
        "sessions": cmd_sessions,
        "switch": cmd_switch,
        "end": cmd_end,
        "discover": cmd_discover,
        "contacts": cmd_contacts,
        "chats": cmd_chats,
        "history": cmd_history,
        "tts": cmd_tts,
        "speak": cmd_speak,
        "rename": cmd_rename,
        "voice": cmd_voice,
    }

    config.load()
    try:
        return commands[args.command](args)
    except WatcherError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
