import pytest
from prompt_toolkit.application import create_app_session
from prompt_toolkit.input import create_pipe_input
from prompt_toolkit.output import DummyOutput

import hourglass as hg

from .helpers import FakeSource

ENTER = "\r"
ESC = "\x1b"
BACKSPACE = "\x7f"
DOWN = "\x1b[B"
UP = "\x1b[A"


@pytest.fixture
def drive(store):
    """Type raw terminal input into a headless run_ui and return the loop once it quits."""
    def _drive(*chunks):
        cfg = hg.Config(tick_ms=10)
        loop = hg.build_event_loop(store, FakeSource(), cfg)
        with create_pipe_input() as inp:
            inp.send_text("".join(chunks))
            with create_app_session(input=inp, output=DummyOutput()):
                hg.run_ui(loop, cfg)
        return loop
    return _drive


def test_typed_keys_add_and_discard(drive, store):
    loop = drive("a", "hi", ENTER, "a", "z", ESC, "q")
    assert [t.description for t in store.tasks] == ["hi"]
    assert loop.interaction.should_quit is True


def test_backspace_edits_buffer(drive, store):
    drive("a", "milkx", BACKSPACE, ENTER, "q")
    assert [t.description for t in store.tasks] == ["milk"]


def test_arrow_keys_move_selection(drive, store):
    store.add("one")
    store.add("two")
    drive(DOWN, "d", DOWN, UP, "q")
    assert [(t.id, t.completed) for t in store.tasks] == [(1, False), (2, True)]


def test_bracketed_paste_inserts_each_character(drive, store):
    drive("a", "\x1b[200~pasted text\x1b[201~", ENTER, "q")
    assert [t.description for t in store.tasks] == ["pasted text"]
