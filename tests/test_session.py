"""Tests for conversation session state."""

from __future__ import annotations

from datetime import datetime

import pytest

from agent_runtime.application.models import (
    Message,
    Role,
    TextBlock,
    ToolCall,
    ToolResultBlock,
    ToolUseBlock,
)
from agent_runtime.application.session import (
    AVAILABLE_MODELS,
    INTERRUPTED_MESSAGE,
    Session,
    SessionStateError,
    find_model,
    interrupted_results,
)
from agent_runtime.infrastructure.config import DEFAULT_MODEL


def user(text: str) -> Message:
    """ユーザーのテキストメッセージを作成する."""
    return Message(role=Role.USER, content=(TextBlock(text=text),))


def assistant_calls(*ids: str) -> Message:
    """ツール呼び出しを含むアシスタントメッセージを作成する."""
    return Message(
        role=Role.ASSISTANT,
        content=tuple(
            ToolUseBlock(id=call_id, name="Read", input={"file_path": f"{call_id}.txt"})
            for call_id in ids
        ),
    )


def results(*ids: str) -> Message:
    """ツール実行結果を含むユーザーメッセージを作成する."""
    return Message(
        role=Role.USER,
        content=tuple(ToolResultBlock(tool_use_id=call_id, content="ok") for call_id in ids),
    )


@pytest.fixture
def session() -> Session:
    """テスト用のSessionインスタンスを作成する."""
    return Session()


class TestSession:
    """Sessionモデルのテスト."""

    def test_create_session(self, session: Session) -> None:
        """Sessionインスタンスの作成テスト."""
        assert session.model_id == DEFAULT_MODEL
        assert session.messages == []
        assert session.id
        assert isinstance(session.created_at, datetime)
        assert isinstance(session.last_activity_at, datetime)

    def test_unique_ids(self) -> None:
        """セッションごとに異なるIDが割り当てられることを確認する."""
        assert Session().id != Session().id

    def test_append_text(self, session: Session) -> None:
        """テキストメッセージが順に追加されることを確認する."""
        session.append(user("hello"))
        session.append(Message(role=Role.ASSISTANT, content=(TextBlock(text="hi"),)))

        assert [m.role for m in session.messages] == [Role.USER, Role.ASSISTANT]
        assert session.messages[1].text == "hi"

    def test_append_updates_last_activity(self, session: Session) -> None:
        """追加時に最終アクティビティ時刻が更新されることを確認する."""
        before = session.last_activity_at
        session.append(user("hello"))
        assert session.last_activity_at >= before

    def test_pending_tool_calls(self, session: Session) -> None:
        """最後のアシスタントメッセージのツール呼び出しが未解決として返ることを確認する."""
        session.append(user("read files"))
        session.append(assistant_calls("t1", "t2"))

        pending = session.pending_tool_calls()

        assert [c.id for c in pending] == ["t1", "t2"]
        assert pending[0] == ToolCall(id="t1", name="Read", input={"file_path": "t1.txt"})

    def test_no_pending_after_results(self, session: Session) -> None:
        """結果を追加した後は未解決の呼び出しがないことを確認する."""
        session.append(user("read files"))
        session.append(assistant_calls("t1"))
        session.append(results("t1"))

        assert session.pending_tool_calls() == []

    def test_results_in_any_order(self, session: Session) -> None:
        """結果の順序は呼び出しの順序と異なってもよいことを確認する."""
        session.append(assistant_calls("t1", "t2"))
        session.append(results("t2", "t1"))

        assert len(session.messages) == 2

    def test_missing_result_rejected(self, session: Session) -> None:
        """一部の呼び出しに結果がない場合はSessionStateErrorが発生することを確認する."""
        session.append(assistant_calls("t1", "t2"))

        with pytest.raises(SessionStateError, match="expected results"):
            session.append(results("t1"))

        # 履歴は変更されない
        assert len(session.messages) == 1

    def test_text_without_results_rejected(self, session: Session) -> None:
        """未解決の呼び出しがある状態でテキストのみを追加できないことを確認する."""
        session.append(assistant_calls("t1"))

        with pytest.raises(SessionStateError):
            session.append(user("next question"))

    def test_assistant_after_calls_rejected(self, session: Session) -> None:
        """未解決の呼び出しの直後にアシスタントメッセージを追加できないことを確認する."""
        session.append(assistant_calls("t1"))

        with pytest.raises(SessionStateError, match="must be answered by a user message"):
            session.append(Message(role=Role.ASSISTANT, content=(TextBlock(text="x"),)))

    def test_results_with_prompt(self, session: Session) -> None:
        """結果と新しい入力を同じユーザーメッセージに含められることを確認する."""
        session.append(assistant_calls("t1"))
        session.append(
            Message(
                role=Role.USER,
                content=(
                    ToolResultBlock(tool_use_id="t1", content="x", is_error=True),
                    TextBlock(text="continue"),
                ),
            )
        )

        assert session.messages[-1].text == "continue"
        assert session.pending_tool_calls() == []

    def test_clear_keeps_model(self, session: Session) -> None:
        """clearで履歴が消去され、モデル選択は保持されることを確認する."""
        session.set_model("claude-opus-4-6")
        session.append(user("hello"))

        session.clear()

        assert session.messages == []
        assert session.model_id == "claude-opus-4-6"

    def test_set_model(self, session: Session) -> None:
        """モデルを変更できることを確認する."""
        session.set_model("claude-haiku-4-5-20251001")
        assert session.model_id == "claude-haiku-4-5-20251001"


class TestInterruptedResults:
    """interrupted_results関数のテスト."""

    def test_one_result_per_call(self) -> None:
        """呼び出しごとに失敗結果が作成されることを確認する."""
        calls = [ToolCall(id="t1", name="Bash"), ToolCall(id="t2", name="Read")]

        blocks = interrupted_results(calls)

        assert [b.tool_use_id for b in blocks] == ["t1", "t2"]
        assert all(b.is_error for b in blocks)
        assert all(b.content == INTERRUPTED_MESSAGE for b in blocks)
        assert INTERRUPTED_MESSAGE.startswith("Tool execution was interrupted. ")
        assert "may have partially completed" in INTERRUPTED_MESSAGE

    def test_empty(self) -> None:
        """呼び出しがない場合は空リストを返すことを確認する."""
        assert interrupted_results([]) == []


class TestFindModel:
    """find_model関数のテスト."""

    def test_exact_id(self) -> None:
        """モデルIDの完全一致で見つかることを確認する."""
        model_id, _ = AVAILABLE_MODELS[0]
        assert find_model(model_id) == AVAILABLE_MODELS[0]

    @pytest.mark.parametrize(
        ("requested", "expected_id"),
        [
            ("opus", "claude-opus-4-6"),
            ("Haiku", "claude-haiku-4-5-20251001"),
            ("sonnet-4-5", "claude-sonnet-4-5-20250929"),
        ],
    )
    def test_partial_match(self, requested: str, expected_id: str) -> None:
        """IDまたは表示名の部分一致で見つかることを確認する."""
        found = find_model(requested)
        assert found is not None
        assert found[0] == expected_id

    def test_not_found(self) -> None:
        """該当するモデルがない場合はNoneを返すことを確認する."""
        assert find_model("gpt-4") is None
