"""Chess Relay Client - resilient client for the live-chess relay protocol.

Connects to a relay game server over TCP, logs in, keeps the connection
alive across drops (fixed or exponential backoff), replays game
subscriptions after every reconnect, turns inbound lines into game-state
events and optionally records the game as PGN.

Protocol (client side):
  -> USER <name> <password>      once, before any other traffic
  -> SUBSCRIBE <id>              replayed after every (re)connect
  -> MOVE <id> <move>, ACCEPT, DRAW, RESIGN, DECLINE
  -> PING                        keep-alive (configurable payload)
  <- fen/status/move/clock/offer lines, MOVE <id> <payload> frames

Usage:
  python relay_client.py [--config config.json] [--host H] [--port P]
                         [--subscribe ID ...] [--pgn PATH]

License: GPL-3.0
"""

import argparse
import asyncio
import enum
import json
import logging
import os
import signal
import sys
import time
from dataclasses import dataclass, fields

import chess

from game_recorder import GameRecorder
from relay_protocol import (
    ACTION_FRAMES,
    Action,
    GameState,
    LineKind,
    apply_line,
    format_frame,
    login_frame,
    move_frame,
    parse_action,
    subscribe_frame,
)
from rotating_log import (
    DEFAULT_ROTATION_BYTES,
    DEFAULT_ROTATION_FILES,
    RotatingLog,
    RotatingLogHandler,
)

DEFAULT_KEEP_ALIVE_SECS = 30
DEFAULT_KEEP_ALIVE_PAYLOAD = "PING"
MIN_BACKOFF_SECS = 1
MAX_BACKOFF_SECS = 30
DEFAULT_RECONNECT_INTERVAL_MS = 2000
DEFAULT_CONNECT_TIMEOUT = 10
STOP_TIMEOUT = 5
LOG_FILE_NAME = "relay.log"
BACKOFF_POLICIES = ("fixed", "exponential")

# ---------------------------------------------------------------------------
# Configuration validation
# ---------------------------------------------------------------------------

REQUIRED_CONFIG_KEYS = {
    "host": str,
    "port": int,
}

OPTIONAL_CONFIG_DEFAULTS = {
    "username": "",
    "password": "",
    "auto_reconnect": True,
    "backoff_policy": "exponential",
    "reconnect_interval_ms": DEFAULT_RECONNECT_INTERVAL_MS,
    "min_backoff_secs": MIN_BACKOFF_SECS,
    "max_backoff_secs": MAX_BACKOFF_SECS,
    "connect_timeout": DEFAULT_CONNECT_TIMEOUT,
    "keep_alive_secs": DEFAULT_KEEP_ALIVE_SECS,
    "keep_alive_payload": DEFAULT_KEEP_ALIVE_PAYLOAD,
    "subscriptions": [],
    "base_log_dir": "",
    "enable_client_log": True,
    "log_max_bytes": DEFAULT_ROTATION_BYTES,
    "log_max_files": DEFAULT_ROTATION_FILES,
    "detailed_log_verbosity": False,
    "record_pgn": False,
    "pgn_path": "",
    "record_game_id": "",
    "event": "",
    "site": "",
    "white": "",
    "black": "",
    "initial_fen": "",
}


def validate_config(config):
    """Validate a client config dict and fill in optional defaults.

    Returns list of error strings (empty if valid).
    """
    errors = []

    for key, expected_type in REQUIRED_CONFIG_KEYS.items():
        if key not in config:
            errors.append(f"Missing required config key: '{key}'")
        elif not isinstance(config[key], expected_type) or isinstance(config[key], bool):
            errors.append(
                f"Config key '{key}' must be {expected_type.__name__}, "
                f"got {type(config[key]).__name__}"
            )

    for key, default in OPTIONAL_CONFIG_DEFAULTS.items():
        if key not in config:
            config[key] = list(default) if isinstance(default, list) else default

    port = config.get("port")
    if isinstance(port, int) and not isinstance(port, bool) and not 0 < port < 65536:
        errors.append(f"port must be between 1 and 65535, got {port}")

    if config["backoff_policy"] not in BACKOFF_POLICIES:
        errors.append(
            f"backoff_policy must be one of {', '.join(BACKOFF_POLICIES)}, "
            f"got '{config['backoff_policy']}'"
        )

    for key in ("reconnect_interval_ms", "min_backoff_secs", "max_backoff_secs",
                "connect_timeout"):
        value = config[key]
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{key} must be a number")
        elif value <= 0:
            errors.append(f"{key} must be > 0")

    min_b, max_b = config["min_backoff_secs"], config["max_backoff_secs"]
    if isinstance(min_b, (int, float)) and isinstance(max_b, (int, float)) and min_b > max_b:
        errors.append("min_backoff_secs must be <= max_backoff_secs")

    keep_alive = config["keep_alive_secs"]
    if not isinstance(keep_alive, (int, float)) or keep_alive < 0:
        errors.append("keep_alive_secs must be a number >= 0")
    if not isinstance(config["keep_alive_payload"], str) or not config["keep_alive_payload"]:
        errors.append("keep_alive_payload must be a non-empty string")

    subs = config["subscriptions"]
    if not isinstance(subs, list):
        errors.append(f"subscriptions must be a list, got {type(subs).__name__}")
    else:
        for game_id in subs:
            if not isinstance(game_id, str) or not game_id:
                errors.append(f"Invalid game id in subscriptions: {game_id!r}")

    if not isinstance(config["log_max_bytes"], int) or config["log_max_bytes"] < 1:
        errors.append("log_max_bytes must be an int >= 1")
    if not isinstance(config["log_max_files"], int) or config["log_max_files"] < 0:
        errors.append("log_max_files must be an int >= 0")

    fen = config["initial_fen"]
    if fen:
        try:
            chess.Board(fen)
        except ValueError as e:
            errors.append(f"Invalid initial_fen '{fen}': {e}")

    return errors


def load_config(path="config.json"):
    """Load and validate configuration from JSON file."""
    try:
        with open(path) as f:
            config = json.load(f)
    except FileNotFoundError:
        print(f"ERROR: Config file not found: {path}")
        print("Create a config.json with at least \"host\" and \"port\"")
        sys.exit(1)
    except json.JSONDecodeError as e:
        print(f"ERROR: Invalid JSON in {path}: {e}")
        sys.exit(1)

    errors = validate_config(config)
    if errors:
        print(f"ERROR: Invalid configuration in {path}:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)

    return config


def default_data_dir():
    """Application data directory for logs and auto-named PGN files."""
    base = os.environ.get("XDG_DATA_HOME") or os.path.join(
        os.path.expanduser("~"), ".local", "share")
    return os.path.join(base, "chess-relay")


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def setup_logging(config):
    """Configure root logging: console plus the rotating relay.log file."""
    handlers = [logging.StreamHandler()]

    base_dir = config.get("base_log_dir", "") or default_data_dir()
    if config["enable_client_log"]:
        try:
            rotating_log = RotatingLog(
                os.path.join(base_dir, LOG_FILE_NAME),
                max_bytes=config["log_max_bytes"],
                max_files=config["log_max_files"],
            )
            handlers.append(RotatingLogHandler(rotating_log))
        except OSError as e:
            print(f"Warning: Cannot create log dir '{base_dir}': {e}. Logging to console only.")

    level = logging.DEBUG if config["detailed_log_verbosity"] else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=handlers,
        force=True,
    )
    return base_dir


# ---------------------------------------------------------------------------
# Errors and events
# ---------------------------------------------------------------------------


class NotConnectedError(ConnectionError):
    """A command needs a live session and there is none."""


class NoConnectionParamsError(RuntimeError):
    """reconnect() was called before any connect()."""


def describe_error(exc):
    """Error text for events; timeouts have an empty str()."""
    return str(exc) or type(exc).__name__


class ConnectionStatus(enum.Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    ERROR = "Error"


@dataclass(frozen=True)
class StatusEvent:
    status: ConnectionStatus
    address: str
    message: str | None = None


@dataclass(frozen=True)
class GameStateEvent:
    state: GameState
    raw: str | None = None


@dataclass(frozen=True)
class MoveFrameEvent:
    game_id: str
    payload: str


@dataclass(frozen=True)
class MessageEvent:
    payload: str


@dataclass(frozen=True)
class ErrorEvent:
    message: str


# ---------------------------------------------------------------------------
# Connection parameters and backoff
# ---------------------------------------------------------------------------


@dataclass
class ConnectParams:
    host: str
    port: int
    username: str = ""
    password: str = ""
    auto_reconnect: bool = True
    backoff_policy: str = "exponential"
    reconnect_interval_ms: int = DEFAULT_RECONNECT_INTERVAL_MS
    min_backoff_secs: float = MIN_BACKOFF_SECS
    max_backoff_secs: float = MAX_BACKOFF_SECS
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    record_pgn: bool = False
    pgn_path: str = ""
    record_game_id: str = ""
    event: str = ""
    site: str = ""
    white: str = ""
    black: str = ""
    initial_fen: str = ""
    data_dir: str = ""

    @property
    def address(self):
        return f"{self.host}:{self.port}"

    @classmethod
    def from_config(cls, config):
        """Build parameters from a validated config dict."""
        names = {f.name for f in fields(cls)}
        kwargs = {key: value for key, value in config.items() if key in names}
        kwargs["data_dir"] = config.get("base_log_dir", "")
        return cls(**kwargs)


class Backoff:
    """Reconnect delay policy.

    fixed:        every delay is `interval` seconds.
    exponential:  starts at `minimum`, doubles after each failed or dropped
                  attempt up to `maximum`, back to `minimum` on reset().
    """

    def __init__(self, policy="exponential", interval=DEFAULT_RECONNECT_INTERVAL_MS / 1000,
                 minimum=MIN_BACKOFF_SECS, maximum=MAX_BACKOFF_SECS):
        if policy not in BACKOFF_POLICIES:
            raise ValueError(f"Unknown backoff policy: {policy!r}")
        self.policy = policy
        self.interval = interval
        self.minimum = minimum
        self.maximum = maximum
        self.reset()

    @classmethod
    def from_params(cls, params):
        return cls(
            policy=params.backoff_policy,
            interval=params.reconnect_interval_ms / 1000,
            minimum=params.min_backoff_secs,
            maximum=params.max_backoff_secs,
        )

    def reset(self):
        self.current = self.interval if self.policy == "fixed" else self.minimum

    def next_delay(self):
        delay = self.current
        if self.policy == "exponential":
            self.current = min(self.current * 2, self.maximum)
        return delay


# ---------------------------------------------------------------------------
# Shutdown-aware waiting
# ---------------------------------------------------------------------------


async def sleep_or_shutdown(delay, shutdown):
    """Sleep `delay` seconds. Returns True if shutdown was signalled first."""
    try:
        await asyncio.wait_for(shutdown.wait(), timeout=delay)
        return True
    except asyncio.TimeoutError:
        return False


async def wait_or_shutdown(aw, shutdown):
    """Await `aw` unless shutdown is signalled first.

    Returns (False, result) when `aw` finished, (True, None) when shutdown
    won; `aw` is cancelled in that case. Exceptions from `aw` propagate.
    """
    task = asyncio.ensure_future(aw)
    stopper = asyncio.ensure_future(shutdown.wait())
    try:
        await asyncio.wait({task, stopper}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stopper.cancel()
        if not task.done():
            task.cancel()

    if task.done() and not task.cancelled():
        return False, task.result()
    try:
        await task
    except asyncio.CancelledError:
        pass
    return True, None


# ---------------------------------------------------------------------------
# Keep-alive ticker
# ---------------------------------------------------------------------------


class KeepAliveTicker:
    """Sends a liveness frame every `interval` seconds until shutdown.

    Failures are logged and the ticker keeps going; keep-alive is best
    effort. restart() swaps interval/payload without touching the session.
    """

    def __init__(self, send, shutdown, interval=DEFAULT_KEEP_ALIVE_SECS,
                 payload=DEFAULT_KEEP_ALIVE_PAYLOAD):
        self._send = send
        self.shutdown = shutdown
        self.interval = interval
        self.payload = payload
        self._task = None

    @property
    def running(self):
        return self._task is not None and not self._task.done()

    def start(self):
        if self.running or self.interval <= 0 or self.shutdown.is_set():
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self):
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def restart(self, interval=None, payload=None):
        await self.stop()
        if interval is not None:
            self.interval = interval
        if payload is not None:
            self.payload = payload
        self.start()

    async def _run(self):
        while not self.shutdown.is_set():
            if await sleep_or_shutdown(self.interval, self.shutdown):
                break
            try:
                await self._send(self.payload)
            except OSError as e:
                logging.warning(f"Keep-alive send failed: {describe_error(e)}")


# ---------------------------------------------------------------------------
# Connection session (one socket)
# ---------------------------------------------------------------------------


class SessionEnd(enum.Enum):
    EOF = "eof"
    READ_ERROR = "read_error"
    WRITE_ERROR = "write_error"
    LOGIN_FAILED = "login_failed"
    SHUTDOWN = "shutdown"
    RECONNECT = "reconnect"


class Control(enum.Enum):
    SEND = "send"
    RECONNECT = "reconnect"


class ConnectionSession:
    """Owns one connected socket until it closes.

    The read loop and the command loop share a single selection point, so
    neither inbound lines nor queued commands can starve the other. All
    writes (commands, login, subscription replay, keep-alive) go through
    send_frame() under one lock.
    """

    def __init__(self, reader, writer, address, emit, state=None,
                 recorder=None, record_game_id=""):
        self.reader = reader
        self.writer = writer
        self.address = address
        self.state = state or GameState()
        self.recorder = recorder
        self.record_game_id = record_game_id
        self.write_lock = asyncio.Lock()
        self.control = asyncio.Queue()
        self.closed = False
        self.error = None
        self.shutdown = None
        self.subscriptions = None
        self._emit = emit
        self._warned_unfiltered = False

    async def send_frame(self, message):
        data = format_frame(message).encode()
        async with self.write_lock:
            self.writer.write(data)
            if self.shutdown is None:
                await self.writer.drain()
            else:
                stopped, _ = await wait_or_shutdown(self.writer.drain(), self.shutdown)
                if stopped:
                    raise NotConnectedError(f"Session to {self.address} is shutting down")
        if not message.startswith("USER "):
            logging.debug(f"TX: {message.rstrip()}")

    async def submit(self, message):
        """Queue a frame for the command loop and wait until it is written."""
        if self.closed:
            raise NotConnectedError(f"Session to {self.address} is closed")
        future = asyncio.get_running_loop().create_future()
        self.control.put_nowait((Control.SEND, message, future))
        await future

    def request_reconnect(self):
        if self.closed:
            raise NotConnectedError(f"Session to {self.address} is closed")
        self.control.put_nowait((Control.RECONNECT, None, None))

    async def run(self, shutdown, username="", password="", subscriptions=None,
                  on_ready=None):
        """Log in, replay subscriptions, then serve until the socket closes."""
        self.shutdown = shutdown
        self.subscriptions = subscriptions
        try:
            if username:
                try:
                    await self.send_frame(login_frame(username, password))
                except OSError as e:
                    if shutdown.is_set():
                        return SessionEnd.SHUTDOWN
                    self.error = f"Login to {self.address} failed: {describe_error(e)}"
                    return SessionEnd.LOGIN_FAILED

            if subscriptions is not None:
                await self._restore_subscriptions(subscriptions)
                if shutdown.is_set():
                    return SessionEnd.SHUTDOWN

            if on_ready is not None:
                on_ready(self)
            return await self._serve(shutdown)
        finally:
            self._fail_pending()
            await self.close()

    async def _restore_subscriptions(self, subscriptions):
        # Re-check the live set so ids added while replaying are sent too
        sent = set()
        try:
            while True:
                pending = sorted(subscriptions - sent)
                if not pending:
                    break
                for game_id in pending:
                    await self.send_frame(subscribe_frame(game_id))
                    sent.add(game_id)
        except OSError as e:
            if self.shutdown is not None and self.shutdown.is_set():
                return
            message = f"Failed to restore subscriptions: {describe_error(e)}"
            logging.error(message)
            self._emit(ErrorEvent(message))
        if sent:
            logging.info(f"Restored {len(sent)} subscription(s) on {self.address}")

    async def _serve(self, shutdown):
        read_task = None
        control_task = None
        stop_task = asyncio.ensure_future(shutdown.wait())
        try:
            while True:
                if read_task is None:
                    read_task = asyncio.ensure_future(self.reader.readline())
                if control_task is None:
                    control_task = asyncio.ensure_future(self.control.get())

                done, _ = await asyncio.wait(
                    {read_task, control_task, stop_task},
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if stop_task in done:
                    logging.info(f"Relay session {self.address}: stop requested")
                    return SessionEnd.SHUTDOWN

                if read_task in done:
                    task, read_task = read_task, None
                    try:
                        data = task.result()
                    except (OSError, ValueError) as e:
                        self.error = f"Failed to read from {self.address}: {describe_error(e)}"
                        return SessionEnd.READ_ERROR
                    if not data:
                        logging.warning(f"Relay session {self.address}: closed by remote host")
                        return SessionEnd.EOF
                    self.handle_line(data.decode(errors="replace").rstrip("\r\n"))

                if control_task in done:
                    task, control_task = control_task, None
                    kind, message, future = task.result()
                    if kind is Control.RECONNECT:
                        logging.info(f"Relay session {self.address}: reconnect requested")
                        return SessionEnd.RECONNECT
                    try:
                        await self.send_frame(message)
                    except OSError as e:
                        if not future.done():
                            future.set_exception(e)
                        if shutdown.is_set():
                            return SessionEnd.SHUTDOWN
                        self.error = f"Failed to write to {self.address}: {describe_error(e)}"
                        return SessionEnd.WRITE_ERROR
                    if not future.done():
                        future.set_result(None)
        finally:
            stop_task.cancel()
            if read_task is not None and not read_task.done():
                read_task.cancel()
            if control_task is not None:
                if not control_task.done():
                    control_task.cancel()
                elif not control_task.cancelled():
                    self._fail_item(control_task.result())

    def handle_line(self, line):
        """Parse one inbound line, publish events, feed the recorder."""
        logging.debug(f"RX: {line}")
        update = apply_line(self.state, line)
        if update.raw is None:
            return
        self.state = update.state
        parsed = update.parsed

        self._emit(GameStateEvent(self.state, update.raw))
        if parsed.kind is LineKind.MOVE_FRAME:
            self._emit(MoveFrameEvent(parsed.frame.game_id, parsed.frame.payload))
        elif parsed.kind is LineKind.MESSAGE:
            logging.debug(f"Unrecognized relay line forwarded as message: {line!r}")
            self._emit(MessageEvent(parsed.line))

        self._record(parsed)

    def _record(self, parsed):
        if self.recorder is None:
            return
        text = None
        if parsed.kind is LineKind.MOVE:
            text = parsed.value
        elif parsed.kind is LineKind.MOVE_FRAME:
            game_id = self._recorded_game_id()
            if not game_id or parsed.frame.game_id == game_id:
                text = parsed.frame.payload
        elif parsed.kind is LineKind.MESSAGE:
            text = parsed.line
        if not text:
            return
        try:
            self.recorder.append_line(text)
        except OSError as e:
            logging.error(f"Failed to record line {text!r}: {e}")

    def _recorded_game_id(self):
        """Game whose move frames feed the recorder; empty records every game.

        Without an explicit record_game_id a single subscription is used as
        the filter. With several, frames from all of them would interleave
        in one PGN, so that is warned about once per session.
        """
        if self.record_game_id:
            return self.record_game_id
        subs = self.subscriptions or ()
        if len(subs) == 1:
            return next(iter(subs))
        if len(subs) > 1 and not self._warned_unfiltered:
            self._warned_unfiltered = True
            logging.warning(f"Recording move frames from {len(subs)} subscribed games "
                            "into one PGN; set record_game_id to pick one")
        return ""

    def _fail_item(self, item):
        _, _, future = item
        if future is not None and not future.done():
            future.set_exception(NotConnectedError(f"Session to {self.address} closed"))

    def _fail_pending(self):
        self.closed = True
        while not self.control.empty():
            self._fail_item(self.control.get_nowait())

    async def close(self):
        self.closed = True
        if not self.writer.is_closing():
            self.writer.close()
            try:
                await self.writer.wait_closed()
            except (ConnectionResetError, BrokenPipeError, OSError):
                pass


# ---------------------------------------------------------------------------
# Connection supervisor (reconnect state machine)
# ---------------------------------------------------------------------------


class ConnectionHandle:
    """One supervised run: shutdown signal, background task, ticker, recorder."""

    def __init__(self, params, shutdown, recorder=None):
        self.params = params
        self.shutdown = shutdown
        self.recorder = recorder
        self.task = None
        self.ticker = None

    async def stop(self, timeout=STOP_TIMEOUT):
        """Signal shutdown and wait until the task has actually stopped."""
        self.shutdown.set()
        if self.ticker is not None:
            await self.ticker.stop()
        if self.task is not None:
            done, _ = await asyncio.wait({self.task}, timeout=timeout)
            if not done:
                logging.warning(f"Relay run for {self.params.address} did not stop "
                                f"within {timeout}s, cancelling")
                self.task.cancel()
                try:
                    await self.task
                except asyncio.CancelledError:
                    pass
            elif not self.task.cancelled() and self.task.exception() is not None:
                logging.error(f"Relay run for {self.params.address} failed: "
                              f"{self.task.exception()}")
        if self.recorder is not None:
            self.recorder.close()


class ConnectionSupervisor:
    """Owns at most one live relay connection and its reconnect policy.

    The host application keeps one instance for its lifetime. connect()
    swaps the current handle under a lock: the previous run is signalled
    and joined before the new one starts.
    """

    def __init__(self, on_event=None, keep_alive_secs=DEFAULT_KEEP_ALIVE_SECS,
                 keep_alive_payload=DEFAULT_KEEP_ALIVE_PAYLOAD):
        self.on_event = on_event
        self.keep_alive_secs = keep_alive_secs
        self.keep_alive_payload = keep_alive_payload
        self.subscriptions = set()
        self.status = ConnectionStatus.DISCONNECTED
        self.status_message = None
        self._state = GameState()
        self._handle = None
        self._handle_lock = asyncio.Lock()
        self._session = None
        self._last_params = None

    @property
    def connected(self):
        return self._session is not None and not self._session.closed

    @property
    def game_state(self):
        if self._session is not None:
            return self._session.state
        return self._state

    # -- host operations ---------------------------------------------------

    async def connect(self, params):
        """Start a supervised connection, replacing any existing one.

        Raises OSError if the PGN recording cannot be created; nothing is
        dialled in that case.
        """
        async with self._handle_lock:
            old, self._handle = self._handle, None
            if old is not None:
                logging.info("Stopping existing relay session before starting new one")
                await old.stop()

            self._last_params = params
            recorder = self._open_recorder(params)

            shutdown = asyncio.Event()
            handle = ConnectionHandle(params, shutdown, recorder=recorder)
            handle.ticker = KeepAliveTicker(
                self._send_keep_alive, shutdown,
                self.keep_alive_secs, self.keep_alive_payload,
            )
            self._state = GameState()
            handle.task = asyncio.create_task(self._run(handle))
            handle.ticker.start()
            self._handle = handle

    async def disconnect(self):
        """Stop the connection and auto-reconnect.

        Returns the PGN path of the closed recording, if there was one.
        """
        async with self._handle_lock:
            handle, self._handle = self._handle, None
            if handle is None:
                return None
            logging.info(f"Disconnecting from {handle.params.address}")
            await handle.stop()
            return handle.recorder.pgn_path if handle.recorder else None

    async def reconnect(self):
        """Connect again with the last used parameters."""
        if self._last_params is None:
            raise NoConnectionParamsError("No previous connection to reconnect")
        await self.connect(self._last_params)

    async def send_action(self, action):
        action = parse_action(action)
        if action is Action.RECONNECT:
            self.request_reconnect()
            return
        await self.send_command(ACTION_FRAMES[action])

    def request_reconnect(self):
        """Close the live session; the supervisor redials without backoff."""
        self._require_session().request_reconnect()

    async def send_command(self, message):
        await self._require_session().submit(message)

    async def subscribe(self, game_id):
        """Subscribe to a game. Returns False if it was already subscribed.

        While disconnected the id is only remembered; it is sent with the
        replay after the next successful connect.
        """
        if not game_id:
            raise ValueError("game id must not be empty")
        if game_id in self.subscriptions:
            return False
        self.subscriptions.add(game_id)
        if self.connected:
            try:
                await self.send_command(subscribe_frame(game_id))
            except OSError as e:
                self._emit_error(f"Failed to subscribe: {describe_error(e)}")
                raise
        return True

    async def send_move(self, game_id, move):
        if not game_id or not move:
            raise ValueError("game id and move must not be empty")
        try:
            await self.send_command(move_frame(game_id, move))
        except OSError as e:
            self._emit_error(f"Failed to send move: {describe_error(e)}")
            raise

    async def configure_keep_alive(self, interval_secs=None, payload=None):
        """Restart the keep-alive ticker; None falls back to the defaults."""
        self.keep_alive_secs = (DEFAULT_KEEP_ALIVE_SECS if interval_secs is None
                                else interval_secs)
        self.keep_alive_payload = payload or DEFAULT_KEEP_ALIVE_PAYLOAD
        handle = self._handle
        if handle is not None and handle.ticker is not None:
            await handle.ticker.restart(self.keep_alive_secs, self.keep_alive_payload)

    def status_snapshot(self):
        handle = self._handle
        recorder = handle.recorder if handle else None
        return {
            "status": self.status.value,
            "message": self.status_message,
            "address": handle.params.address if handle else None,
            "connected": self.connected,
            "subscriptions": sorted(self.subscriptions),
            "game": self.game_state.to_dict(),
            "recording": recorder is not None,
            "pgn_path": recorder.pgn_path if recorder else None,
            "moves_recorded": recorder.moves_recorded if recorder else 0,
        }

    def analysis_options(self):
        handle = self._handle
        if handle is None or handle.recorder is None:
            return None
        return handle.recorder.analysis_options()

    # -- internals ---------------------------------------------------------

    def _require_session(self):
        session = self._session
        if session is None or session.closed:
            raise NotConnectedError("No active relay connection")
        return session

    def _open_recorder(self, params):
        if not params.record_pgn:
            return None
        path = params.pgn_path
        if not path:
            stamp = time.strftime("%Y%m%dT%H%M%SZ", time.gmtime())
            path = os.path.join(params.data_dir or default_data_dir(), f"relay-{stamp}.pgn")
        recorder = GameRecorder(
            path,
            event=params.event,
            site=params.site,
            white=params.white,
            black=params.black,
            initial_fen=params.initial_fen or None,
        )
        logging.info(f"Recording {params.address} -> {path}")
        return recorder

    async def _send_keep_alive(self, payload):
        session = self._session
        if session is None or session.closed:
            logging.debug("Keep-alive skipped: not connected")
            return
        await session.send_frame(payload)

    def _emit(self, event):
        if self.on_event is None:
            return
        try:
            self.on_event(event)
        except Exception as e:
            logging.error(f"Event handler failed on {type(event).__name__}: {e}")

    def _emit_error(self, message):
        logging.error(message)
        self._emit(ErrorEvent(message))

    def _set_status(self, status, address, message=None):
        self.status = status
        self.status_message = message
        logging.info(f"Relay {address}: {status.value}" + (f" ({message})" if message else ""))
        self._emit(StatusEvent(status, address, message))

    def _session_ready(self, session):
        self._session = session
        self._set_status(ConnectionStatus.CONNECTED, session.address, "connected")

    async def _run(self, handle):
        params = handle.params
        shutdown = handle.shutdown
        address = params.address
        backoff = Backoff.from_params(params)

        try:
            while not shutdown.is_set():
                self._set_status(ConnectionStatus.CONNECTING, address)
                try:
                    stopped, streams = await wait_or_shutdown(
                        asyncio.wait_for(
                            asyncio.open_connection(params.host, params.port),
                            timeout=params.connect_timeout,
                        ),
                        shutdown,
                    )
                except (OSError, asyncio.TimeoutError) as e:
                    message = f"Connection to {address} failed: {describe_error(e)}"
                    self._emit_error(message)
                    self._set_status(ConnectionStatus.ERROR, address, message)
                    if not params.auto_reconnect:
                        break
                    delay = backoff.next_delay()
                    logging.info(f"Relay {address}: retrying in {delay}s")
                    if await sleep_or_shutdown(delay, shutdown):
                        break
                    continue
                if stopped:
                    break

                reader, writer = streams
                backoff.reset()
                session = ConnectionSession(
                    reader, writer, address, self._emit,
                    state=self._state,
                    recorder=handle.recorder,
                    record_game_id=params.record_game_id,
                )
                end = await session.run(
                    shutdown,
                    username=params.username,
                    password=params.password,
                    subscriptions=self.subscriptions,
                    on_ready=self._session_ready,
                )
                self._session = None
                self._state = session.state

                if end is SessionEnd.SHUTDOWN:
                    break
                if end is SessionEnd.RECONNECT:
                    self._set_status(ConnectionStatus.DISCONNECTED, address, "reconnecting")
                    continue

                if session.error:
                    self._emit_error(session.error)
                    self._set_status(ConnectionStatus.ERROR, address, session.error)
                else:
                    self._set_status(ConnectionStatus.DISCONNECTED, address, "disconnected")
                if not params.auto_reconnect:
                    break
                delay = backoff.next_delay()
                logging.info(f"Relay {address}: reconnecting in {delay}s")
                if await sleep_or_shutdown(delay, shutdown):
                    break
        finally:
            # The ticker watches the same event, so it ends with the run
            shutdown.set()
            self._session = None
            self._set_status(ConnectionStatus.DISCONNECTED, address, "stopped")


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------


def log_event(event):
    """Default event sink for the command line client."""
    if isinstance(event, GameStateEvent):
        logging.debug(f"Game: {event.state}")
    elif isinstance(event, MoveFrameEvent):
        logging.info(f"Move [{event.game_id}]: {event.payload}")
    elif isinstance(event, MessageEvent):
        logging.info(f"Message: {event.payload}")
    elif isinstance(event, ErrorEvent):
        logging.debug(f"Error event: {event.message}")


def config_from_args(args):
    """Load config.json if present, then apply command line overrides."""
    if os.path.exists(args.config) or not (args.host and args.port):
        config = load_config(args.config)
    else:
        config = {}

    if args.host:
        config["host"] = args.host
    if args.port:
        config["port"] = args.port
    if args.subscribe:
        config["subscriptions"] = list(config.get("subscriptions", [])) + args.subscribe
    if args.pgn:
        config["record_pgn"] = True
        config["pgn_path"] = args.pgn
    if args.no_reconnect:
        config["auto_reconnect"] = False

    errors = validate_config(config)
    if errors:
        print("ERROR: Invalid configuration:")
        for err in errors:
            print(f"  - {err}")
        sys.exit(1)
    return config


async def run_client(config, stop_event=None):
    """Connect with `config` and run until `stop_event` is set."""
    supervisor = ConnectionSupervisor(
        on_event=log_event,
        keep_alive_secs=config["keep_alive_secs"],
        keep_alive_payload=config["keep_alive_payload"],
    )
    for game_id in config["subscriptions"]:
        await supervisor.subscribe(game_id)

    stop_event = stop_event or asyncio.Event()

    def signal_handler():
        logging.info("Shutdown signal received")
        stop_event.set()

    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, signal_handler)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            pass  # Windows / non-main thread

    try:
        await supervisor.connect(ConnectParams.from_config(config))
        await stop_event.wait()
    finally:
        pgn_path = await supervisor.disconnect()
        if pgn_path:
            logging.info(f"PGN saved to {pgn_path}")
        for sig in installed:
            loop.remove_signal_handler(sig)
    return supervisor


def main(argv=None):
    parser = argparse.ArgumentParser(description="Chess Relay Client")
    parser.add_argument("--config", default="config.json",
                        help="Path to JSON config (default: config.json)")
    parser.add_argument("--host", help="Relay server host (overrides config)")
    parser.add_argument("--port", type=int, help="Relay server port (overrides config)")
    parser.add_argument("--subscribe", action="append", metavar="GAME_ID",
                        help="Subscribe to a game id (repeatable)")
    parser.add_argument("--pgn", help="Record the game to this PGN file")
    parser.add_argument("--no-reconnect", action="store_true",
                        help="Stop after the first disconnect instead of redialling")
    args = parser.parse_args(argv)

    config = config_from_args(args)
    setup_logging(config)

    try:
        asyncio.run(run_client(config))
    except KeyboardInterrupt:
        logging.info("Interrupted")


if __name__ == "__main__":
    main()
