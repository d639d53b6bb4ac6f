import pytest

from keelson.exceptions import SessionNotFoundError
from keelson.llm import Message, TextBlock, ToolResultBlock, ToolUseBlock
from keelson.session import DisplayEntry, Session, SessionManager, make_preview, new_session_id


def _session(text: str = "hello there") -> Session:
    return Session(
        id=new_session_id(),
        messages=[
            Message(role="user", content=text),
            Message(
                role="assistant",
                content=[TextBlock(text="Looking."), ToolUseBlock(id="t1", name="list_directory", input={"path": "."})],
            ),
            Message(role="user", content=[ToolResultBlock(tool_use_id="t1", content="Contents of '.':\nsrc/")]),
        ],
        display_log=[
            DisplayEntry(kind="user", content=text),
            DisplayEntry(kind="tool", content="src/", tool_name="list_directory", tool_input={"path": "."}),
        ],
        system_prompt="prompt",
        input_tokens=10,
        output_tokens=5,
    )


@pytest.mark.asyncio
async def test_session_manager_creates_database_file(tmp_path):
    db_path = tmp_path / "nested" / "sessions.db"
    manager = SessionManager(db_path=db_path)
    try:
        await manager.save_session(_session())
        assert db_path.exists()
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_save_and_load_round_trip(tmp_path):
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    try:
        original = _session()
        await manager.save_session(original)

        loaded = await manager.load_session(original.id)

        assert loaded.id == original.id
        assert loaded.messages == original.messages
        assert isinstance(loaded.messages[1].content[1], ToolUseBlock)
        assert loaded.display_log == original.display_log
        assert loaded.system_prompt == "prompt"
        assert (loaded.input_tokens, loaded.output_tokens) == (10, 5)
        assert loaded.created_at == original.created_at
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_load_unknown_session_raises(tmp_path):
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    try:
        with pytest.raises(SessionNotFoundError, match="Session not found: missing"):
            await manager.load_session("missing")
    finally:
        await manager.close()


@pytest.mark.asyncio
async def test_list_sessions_newest_first_with_preview(tmp_path):
    manager = SessionManager(db_path=tmp_path / "sessions.db")
    try:
        first = _session("first   task\nwith newline")
        second = _session("second task")
        await manager.save_session(first)
        await manager.save_session(second)

        sessions = await manager.list_sessions(limit=20)

        assert [meta.id for meta in sessions] == [second.id, first.id]
        assert sessions[1].preview == "first task with newline"
        assert sessions[0].message_count == 3

        await manager.save_session(first)
        sessions = await manager.list_sessions(limit=1)
        assert [meta.id for meta in sessions] == [first.id]
    finally:
        await manager.close()


def test_preview_truncates_long_text():
    messages = [Message(role="user", content="x" * 200)]

    preview = make_preview(messages)

    assert preview == "x" * 120 + "..."


def test_preview_skips_tool_results_and_handles_empty():
    assert make_preview([]) == "(empty session)"
    messages = [
        Message(role="user", content=[ToolResultBlock(tool_use_id="t", content="ignored")]),
        Message(role="user", content="real question"),
    ]
    assert make_preview(messages) == "real question"
