"""Test suite for game_recorder.py.

Tests cover:
- Token splitting (move-number noise)
- SAN / coordinate notation conversion against a running position
- Move list, PGN body and result handling
- Header block (standard and custom starting positions)
- Resource errors on the PGN sink
"""

from datetime import datetime

import chess
import pytest

from game_recorder import (
    GameRecorder,
    NotationBridge,
    TokenKind,
    tokens_from_line,
)


@pytest.fixture
def pgn_path(tmp_path):
    return tmp_path / "games" / "game.pgn"


@pytest.fixture
def recorder(pgn_path):
    rec = GameRecorder(pgn_path, white="Alice", black="Bob")
    yield rec
    rec.close()


def _text(path):
    with open(path, encoding="utf-8") as f:
        return f.read()


def _body(path):
    return _text(path).split("\n\n", 1)[1]


# ===========================================================================
# Token splitting
# ===========================================================================


class TestTokensFromLine:

    def test_strips_move_numbers(self):
        assert tokens_from_line("1. e4 e5 2.Nf3") == ["e4", "e5", "Nf3"]

    def test_strips_black_move_numbers(self):
        assert tokens_from_line("12...Nc6 13. O-O") == ["Nc6", "O-O"]

    def test_keeps_results(self):
        assert tokens_from_line("e4 1/2-1/2") == ["e4", "1/2-1/2"]

    def test_empty_line(self):
        assert tokens_from_line("   ") == []


# ===========================================================================
# NotationBridge
# ===========================================================================


class TestNotationBridge:

    def test_parses_san(self):
        bridge = NotationBridge()
        move, kind = bridge.parse("Nf3")
        assert kind is TokenKind.SAN
        assert move.uci() == "g1f3"

    def test_parses_coordinate_notation(self):
        bridge = NotationBridge()
        move, kind = bridge.parse("g1f3")
        assert kind is TokenKind.UCI
        assert move == chess.Move.from_uci("g1f3")

    def test_rejects_illegal_move(self):
        bridge = NotationBridge()
        assert bridge.parse("e2e5") == (None, TokenKind.NOISE)
        assert bridge.parse("Ke2") == (None, TokenKind.NOISE)

    def test_rejects_null_moves(self):
        bridge = NotationBridge()
        assert bridge.parse("0000") == (None, TokenKind.NOISE)
        assert bridge.parse("--") == (None, TokenKind.NOISE)

    def test_ignores_annotation_glyphs(self):
        bridge = NotationBridge()
        move, kind = bridge.parse("e4!?")
        assert kind is TokenKind.SAN
        assert move.uci() == "e2e4"

    def test_converts_between_notations(self):
        bridge = NotationBridge()
        assert bridge.to_san("g1f3") == "Nf3"
        assert bridge.to_uci("Nf3") == "g1f3"
        assert bridge.to_san("garbage") is None

    def test_play_advances_position(self):
        bridge = NotationBridge()
        move, _ = bridge.parse("e4")
        assert bridge.play(move) == ("e2e4", "e4")
        assert bridge.board.turn == chess.BLACK

    def test_custom_fen(self):
        fen = "4k3/8/8/8/8/8/4P3/4K3 w - - 0 1"
        bridge = NotationBridge(fen)
        assert bridge.fen == fen
        assert bridge.to_uci("e4") == "e2e4"


# ===========================================================================
# GameRecorder
# ===========================================================================


class TestGameRecorder:

    def test_tokens_produce_moves_result_and_body(self, recorder, pgn_path):
        for token in ["1.", "e4", "e5", "2.", "Nf3", "1-0"]:
            recorder.append_token(token)

        assert recorder.moves == ["e2e4", "e7e5", "g1f3"]
        assert recorder.result == "1-0"
        assert recorder.finished
        assert _body(pgn_path) == "1. e4 e5 2. Nf3 1-0\n"

    def test_coordinate_tokens_written_as_san(self, recorder, pgn_path):
        applied = recorder.append_line("e2e4 e7e5 g1f3 b8c6")
        assert applied == 4
        assert recorder.moves == ["e2e4", "e7e5", "g1f3", "b8c6"]
        assert _body(pgn_path) == "1. e4 e5 2. Nf3 Nc6 "

    def test_token_kinds(self, recorder):
        assert recorder.append_token("e4") is TokenKind.SAN
        assert recorder.append_token("g8f6") is TokenKind.UCI
        assert recorder.append_token("12") is TokenKind.NOISE
        assert recorder.append_token("") is TokenKind.NOISE
        assert recorder.append_token("*") is TokenKind.RESULT

    def test_unparseable_tokens_dropped(self, recorder):
        applied = recorder.append_line("e4 Ke2?? xyz e5")
        assert applied == 2
        assert recorder.moves == ["e2e4", "e7e5"]
        assert recorder.result is None

    def test_finish_is_idempotent(self, recorder, pgn_path):
        recorder.append_line("e4")
        assert recorder.finish("1-0") is True
        assert recorder.finish("0-1") is False
        assert recorder.result == "1-0"
        body = _body(pgn_path)
        assert body.endswith("1-0\n")
        assert "0-1" not in body

    def test_tokens_after_result_ignored(self, recorder, pgn_path):
        recorder.append_line("e4 1/2-1/2 e5 0-1")
        assert recorder.moves == ["e2e4"]
        assert recorder.result == "1/2-1/2"
        assert _body(pgn_path) == "1. e4 1/2-1/2\n"

    def test_replaying_moves_reproduces_position(self, recorder):
        recorder.append_line("1. e4 e7e5 2. Nf3 b8c6 3. Bb5 a7a6 4. Ba4 g8f6 5. O-O")
        assert len(recorder.moves) == 9
        assert recorder.moves[-1] == "e1g1"

        board = chess.Board()
        for uci in recorder.moves:
            board.push_uci(uci)
        assert board.fen() == recorder.fen

    def test_standard_headers(self, recorder, pgn_path):
        text = _text(pgn_path)
        lines = text.split("\n\n", 1)[0].splitlines()
        assert lines == [
            '[Event "Relay Live"]',
            '[Site "Relay"]',
            f'[Date "{datetime.now().strftime("%Y.%m.%d")}"]',
            '[White "Alice"]',
            '[Black "Bob"]',
            '[Round "1"]',
            '[Result "*"]',
        ]

    def test_header_result_stays_open_after_finish(self, recorder, pgn_path):
        recorder.append_line("e4 e5 0-1")
        assert '[Result "*"]' in _text(pgn_path)

    def test_custom_start_adds_setup_headers(self, tmp_path):
        fen = "4k3/8/8/8/8/8/4P3/4K3 w - - 0 1"
        path = tmp_path / "endgame.pgn"
        rec = GameRecorder(path, initial_fen=fen)
        rec.close()
        text = _text(path)
        assert '[SetUp "1"]' in text
        assert f'[FEN "{fen}"]' in text

    def test_black_to_move_start_numbering(self, tmp_path):
        fen = "rnbqkbnr/pppppppp/8/8/4P3/8/PPPP1PPP/RNBQKBNR b KQkq - 0 1"
        path = tmp_path / "black.pgn"
        rec = GameRecorder(path, initial_fen=fen)
        rec.append_line("e5 Nf3")
        rec.close()
        assert _body(path) == "1... e5 2. Nf3 "

    def test_custom_start_uses_fullmove_counter(self, tmp_path):
        fen = "4k3/8/8/8/8/8/4P3/4K3 w - - 0 20"
        path = tmp_path / "numbered.pgn"
        rec = GameRecorder(path, initial_fen=fen)
        rec.append_line("e4 Kd7 Kf2")
        rec.close()
        assert _body(path) == "20. e4 Kd7 21. Kf2 "

    def test_header_values_escaped(self, tmp_path):
        path = tmp_path / "quoted.pgn"
        rec = GameRecorder(path, event='The "Big" Match')
        rec.close()
        assert '[Event "The \\"Big\\" Match"]' in _text(path)

    def test_analysis_options(self, recorder):
        recorder.append_line("d4 d5")
        assert recorder.analysis_options() == {
            "fen": chess.STARTING_FEN,
            "moves": ["d2d4", "d7d5"],
        }

    def test_moves_returns_copy(self, recorder):
        recorder.append_line("e4")
        recorder.moves.append("bogus")
        assert recorder.moves == ["e2e4"]

    def test_close_stops_recording(self, recorder, pgn_path):
        recorder.append_line("e4")
        recorder.close()
        recorder.close()
        assert recorder.append_token("e5") is TokenKind.NOISE
        assert recorder.finish("1-0") is False
        assert _body(pgn_path) == "1. e4 "

    def test_unwritable_path_raises(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file")
        with pytest.raises(OSError):
            GameRecorder(blocker / "game.pgn")

    def test_invalid_fen_raises_before_creating_file(self, pgn_path):
        with pytest.raises(ValueError):
            GameRecorder(pgn_path, initial_fen="not a fen")
        assert not pgn_path.exists()
