"""Game Recorder - turns relay move tokens into a streaming PGN record.

Tokens arrive in either SAN (Nf3) or coordinate notation (g1f3), mixed with
move-number noise ("12.") and result markers. Legal moves are applied to a
python-chess board, kept as a UCI move list and written to the PGN sink in
SAN. Anything that does not parse is dropped: a malformed feed must never
crash the connection that carries it.

The PGN is written incrementally and never rewritten, so the header Result
stays "*" and the real result is the terminating token of the move text.

License: GPL-3.0
"""

import enum
import logging
import os
import threading
from datetime import datetime

import chess

RESULT_TOKENS = ("1-0", "0-1", "1/2-1/2", "*")

DEFAULT_EVENT = "Relay Live"
DEFAULT_SITE = "Relay"
DEFAULT_PLAYER = "Unknown"


class TokenKind(enum.Enum):
    RESULT = "result"
    SAN = "san"
    UCI = "uci"
    NOISE = "noise"


def tokens_from_line(line):
    """Split a line into candidate move tokens.

    Move-number prefixes are removed by splitting on '.', so "12.Nf3",
    "12. Nf3" and "12...Nf3" all yield ["Nf3"].
    """
    tokens = []
    for word in line.split():
        for part in word.split("."):
            part = part.strip()
            if part and not part.isdigit():
                tokens.append(part)
    return tokens


def _pgn_escape(value):
    return str(value).replace("\\", "\\\\").replace('"', '\\"')


class NotationBridge:
    """Converts move tokens to legal moves against a running position."""

    def __init__(self, fen=None):
        self.board = chess.Board(fen) if fen else chess.Board()

    @property
    def fen(self):
        return self.board.fen()

    def parse(self, token):
        """Return (move, TokenKind) for a legal move token, else (None, NOISE).

        SAN is tried first, then coordinate notation. Null moves are not
        accepted as moves. Trailing annotation glyphs (!, ?) are ignored.
        """
        token = token.rstrip("!?")
        if not token:
            return None, TokenKind.NOISE
        try:
            move = self.board.parse_san(token)
        except ValueError:
            move = None
        if move:
            return move, TokenKind.SAN

        try:
            move = self.board.parse_uci(token)
        except ValueError:
            move = None
        if move:
            return move, TokenKind.UCI

        return None, TokenKind.NOISE

    def play(self, move):
        """Apply a legal move. Returns (uci, san) computed before the push."""
        san = self.board.san(move)
        uci = self.board.uci(move)
        self.board.push(move)
        return uci, san

    def to_san(self, token):
        """SAN for a token in the current position, or None."""
        move, _ = self.parse(token)
        return self.board.san(move) if move else None

    def to_uci(self, token):
        """Coordinate notation for a token in the current position, or None."""
        move, _ = self.parse(token)
        return self.board.uci(move) if move else None


class GameRecorder:
    """Owns the position, the UCI move list and the PGN sink of one game.

    All mutation goes through one lock, so a status query from another
    thread never sees a half-applied move.
    """

    def __init__(self, pgn_path, event=None, site=None, white=None,
                 black=None, initial_fen=None):
        # Parse the FEN before touching the filesystem
        self.bridge = NotationBridge(initial_fen)
        self.start_fen = self.bridge.fen
        self.pgn_path = os.fspath(pgn_path)
        self.result = None
        self._moves = []
        self._lock = threading.Lock()
        self._closed = False

        parent = os.path.dirname(os.path.abspath(self.pgn_path))
        os.makedirs(parent, exist_ok=True)
        self._sink = open(self.pgn_path, "w", encoding="utf-8")

        headers = [
            ("Event", event or DEFAULT_EVENT),
            ("Site", site or DEFAULT_SITE),
            ("Date", datetime.now().strftime("%Y.%m.%d")),
            ("White", white or DEFAULT_PLAYER),
            ("Black", black or DEFAULT_PLAYER),
            ("Round", "1"),
            ("Result", "*"),
        ]
        if self.start_fen != chess.STARTING_FEN:
            headers.append(("SetUp", "1"))
            headers.append(("FEN", self.start_fen))

        for key, value in headers:
            self._sink.write(f'[{key} "{_pgn_escape(value)}"]\n')
        self._sink.write("\n")
        self._sink.flush()

    @property
    def moves(self):
        with self._lock:
            return list(self._moves)

    @property
    def moves_recorded(self):
        return len(self._moves)

    @property
    def fen(self):
        with self._lock:
            return self.bridge.fen

    @property
    def finished(self):
        return self.result is not None

    def append_line(self, line):
        """Feed every token of a line. Returns the number of moves applied."""
        applied = 0
        for token in tokens_from_line(line):
            if self.append_token(token) in (TokenKind.SAN, TokenKind.UCI):
                applied += 1
        return applied

    def append_token(self, token):
        """Classify and apply one token. Returns its TokenKind.

        Result markers finish the game. Once finished (or closed) further
        move tokens are ignored.
        """
        token = token.strip()
        if not token or token.isdigit():
            return TokenKind.NOISE

        with self._lock:
            if token in RESULT_TOKENS:
                self._finish(token)
                return TokenKind.RESULT

            if self.result is not None or self._closed:
                logging.debug(f"Recorder: ignoring {token!r} after game end")
                return TokenKind.NOISE

            move, kind = self.bridge.parse(token)
            if move is None:
                logging.debug(f"Recorder: dropped token {token!r} at {self.bridge.fen}")
                return TokenKind.NOISE

            board = self.bridge.board
            white_to_move = board.turn == chess.WHITE
            first_move = not self._moves
            move_number = board.fullmove_number
            uci, san = self.bridge.play(move)
            self._write_san(san, move_number, white_to_move, first_move)
            self._moves.append(uci)
            return kind

    def _write_san(self, san, move_number, white_to_move, first_move):
        if white_to_move:
            self._sink.write(f"{move_number}. {san} ")
        elif first_move:
            self._sink.write(f"{move_number}... {san} ")
        else:
            self._sink.write(f"{san} ")
        self._sink.flush()

    def finish(self, result):
        """Record the result once. Later calls are no-ops.

        Returns True if this call recorded the result.
        """
        with self._lock:
            return self._finish(result)

    def _finish(self, result):
        if self.result is not None or self._closed:
            return False
        self.result = result
        self._sink.write(f"{result}\n")
        self._sink.flush()
        logging.info(f"Recorder: game finished {result} after {len(self._moves)} plies")
        return True

    def close(self):
        """Flush and close the PGN sink. No result is written."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._sink.close()

    def analysis_options(self):
        """Starting FEN plus UCI move list, for handing the game to analysis."""
        with self._lock:
            return {"fen": self.start_fen, "moves": list(self._moves)}
