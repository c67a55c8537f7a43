"""Relay protocol - line classification, game-state updates, outbound frames.

Inbound lines (one per '\\n'):
  fen <FEN>                 ->  GameState.fen
  status <text>             ->  GameState.status
  move <move>               ->  GameState.last_move
  clock w=<ms> b=<ms>       ->  GameState.white_clock_ms / black_clock_ms
  offer draw                ->  can_accept_draw = True   (case-insensitive)
  offer cancel              ->  can_accept_draw = False  (case-insensitive)
  MOVE <game id> <payload>  ->  move frame for a subscribed game
  anything else             ->  opaque message, forwarded verbatim

Outbound frames are normalized to end in \\r\\n:
  USER <name> <password>, SUBSCRIBE <id>, MOVE <id> <move>, PING,
  ACCEPT, DRAW, RESIGN, DECLINE

License: GPL-3.0
"""

import dataclasses
import enum
import logging
from dataclasses import dataclass, field


class LineKind(enum.Enum):
    EMPTY = "empty"
    FEN = "fen"
    STATUS = "status"
    MOVE = "move"
    CLOCK = "clock"
    DRAW_OFFER = "draw_offer"
    DRAW_CANCEL = "draw_cancel"
    MOVE_FRAME = "move_frame"
    MESSAGE = "message"


@dataclass(frozen=True)
class GameState:
    """Latest known state of the watched game.

    Each field is overwritten by the newest line that mentions it; lines
    that do not mention a field leave it alone.
    """

    fen: str | None = None
    white_clock_ms: int | None = None
    black_clock_ms: int | None = None
    status: str | None = None
    last_move: str | None = None
    can_offer_draw: bool = False
    can_accept_draw: bool = False
    can_resign: bool = False

    def to_dict(self):
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class MoveFrame:
    game_id: str
    payload: str


@dataclass(frozen=True)
class ParsedLine:
    """Result of the single classification step for one inbound line."""

    kind: LineKind
    line: str
    value: str = ""
    clocks: dict = field(default_factory=dict)
    frame: MoveFrame | None = None


@dataclass(frozen=True)
class LineUpdate:
    state: GameState
    raw: str | None
    parsed: ParsedLine


def parse_clocks(text):
    """Scan 'w=<ms> b=<ms>' tokens. Non-integer values are skipped."""
    clocks = {}
    for token in text.split():
        side, sep, value = token.partition("=")
        if not sep or side not in ("w", "b"):
            continue
        try:
            ms = int(value)
        except ValueError:
            logging.debug(f"Ignoring malformed clock token: {token!r}")
            continue
        clocks["white_clock_ms" if side == "w" else "black_clock_ms"] = ms
    return clocks


def classify_line(line):
    """Map one raw line to a ParsedLine. Never raises."""
    line = line.strip()
    if not line:
        return ParsedLine(LineKind.EMPTY, line)

    if line.startswith("fen "):
        return ParsedLine(LineKind.FEN, line, value=line[4:].strip())
    if line.startswith("status "):
        return ParsedLine(LineKind.STATUS, line, value=line[7:].strip())
    if line.startswith("move "):
        return ParsedLine(LineKind.MOVE, line, value=line[5:].strip())
    if line.startswith("clock "):
        rest = line[6:]
        return ParsedLine(LineKind.CLOCK, line, value=rest.strip(),
                          clocks=parse_clocks(rest))

    lowered = line.lower()
    if lowered.startswith("offer draw"):
        return ParsedLine(LineKind.DRAW_OFFER, line)
    if lowered.startswith("offer cancel"):
        return ParsedLine(LineKind.DRAW_CANCEL, line)

    if line.startswith("MOVE "):
        parts = line[5:].split(None, 1)
        if parts:
            payload = parts[1] if len(parts) > 1 else ""
            frame = MoveFrame(game_id=parts[0], payload=payload)
            return ParsedLine(LineKind.MOVE_FRAME, line, value=payload, frame=frame)

    return ParsedLine(LineKind.MESSAGE, line, value=line)


def apply_line(state, line):
    """Fold one line into the game state.

    Pure: the same (state, line) always gives the same LineUpdate. Any
    non-empty line marks draw offers and resignation as available.
    """
    parsed = classify_line(line)
    if parsed.kind is LineKind.EMPTY:
        return LineUpdate(state, None, parsed)

    changes = {"can_offer_draw": True, "can_resign": True}
    if parsed.kind is LineKind.FEN:
        changes["fen"] = parsed.value
    elif parsed.kind is LineKind.STATUS:
        changes["status"] = parsed.value
    elif parsed.kind is LineKind.MOVE:
        changes["last_move"] = parsed.value
    elif parsed.kind is LineKind.CLOCK:
        changes.update(parsed.clocks)
    elif parsed.kind is LineKind.DRAW_OFFER:
        changes["can_accept_draw"] = True
    elif parsed.kind is LineKind.DRAW_CANCEL:
        changes["can_accept_draw"] = False

    return LineUpdate(dataclasses.replace(state, **changes), parsed.line, parsed)


# ---------------------------------------------------------------------------
# Outbound frames
# ---------------------------------------------------------------------------


class Action(enum.Enum):
    """User intents the host can send while connected."""

    ACCEPT_OFFER = "accept_offer"
    OFFER_DRAW = "offer_draw"
    RESIGN = "resign"
    DECLINE_DRAW = "decline_draw"
    RECONNECT = "reconnect"


# RECONNECT has no frame: it closes the session and redials
ACTION_FRAMES = {
    Action.ACCEPT_OFFER: "ACCEPT",
    Action.OFFER_DRAW: "DRAW",
    Action.RESIGN: "RESIGN",
    Action.DECLINE_DRAW: "DECLINE",
}


def parse_action(value):
    """Accept an Action or a name such as 'AcceptOffer' / 'accept_offer'."""
    if isinstance(value, Action):
        return value
    key = str(value).replace("_", "").replace("-", "").lower()
    for action in Action:
        if action.value.replace("_", "") == key:
            return action
    raise ValueError(f"Unknown action: {value!r}")


def format_frame(message):
    """Terminate a frame with exactly one \\r\\n."""
    return message.rstrip("\r\n") + "\r\n"


def login_frame(username, password):
    if password:
        return f"USER {username} {password}"
    return f"USER {username}"


def subscribe_frame(game_id):
    return f"SUBSCRIBE {game_id}"


def move_frame(game_id, move):
    return f"MOVE {game_id} {move}"
