"""Tests for the end-to-end chat turn: ordering, metering and failure handling."""

from contextlib import ExitStack
from datetime import datetime, timezone
import io
import unittest
from unittest.mock import AsyncMock, Mock, patch

from PIL import Image

from rizzmate import media, pipeline
from rizzmate.errors import (
    GenerationFailed,
    InvalidInput,
    NotFound,
    PersistenceFailure,
    QuotaExceeded,
    UpstreamUnavailable,
)


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def _account(plan="free", messages=0, images=0, voice_minutes=0):
    return {
        "id": "user-1",
        "plan": plan,
        "plan_started_at": datetime(2026, 3, 1, tzinfo=timezone.utc),
        "plan_ends_at": None,
        "usage": {
            "messages": messages,
            "images": images,
            "voice_minutes": voice_minutes,
            "period_start": datetime(2026, 3, 1, tzinfo=timezone.utc),
        },
    }


def _profile():
    return {
        "id": "profile-1",
        "user_id": "user-1",
        "target_person": {"personality": "extrovert", "relationship": "friend", "context": "online"},
        "conversation_style": {"tone": "flirty", "approach": "playful", "language": "en"},
        "conversation_history": [],
        "status": "active",
        "is_active": True,
    }


def _conversation():
    return {
        "id": "conv-1",
        "user_id": "user-1",
        "profile_id": "profile-1",
        "messages": [],
        "status": "active",
        "total_messages": 0,
        "last_activity": None,
    }


def _append_messages(conversation, messages):
    updated = list(conversation["messages"]) + list(messages)
    return {**conversation, "messages": updated, "total_messages": len(updated)}


def _png_bytes():
    buffer = io.BytesIO()
    Image.new("RGB", (64, 64)).save(buffer, format="PNG")
    return buffer.getvalue()


class ChatTurnTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.get_profile_mock = AsyncMock(return_value=_profile())
        self.get_active_mock = AsyncMock(return_value=None)
        self.get_or_create_mock = AsyncMock(return_value=_conversation())
        self.append_messages_mock = AsyncMock(side_effect=_append_messages)
        self.append_interaction_mock = AsyncMock()
        self.update_usage_mock = AsyncMock()
        self.complete_mock = AsyncMock(return_value="Hey! What are you up to tonight?")

    def _patches(self, stack):
        stack.enter_context(patch("rizzmate.quota._now_utc", return_value=NOW))
        stack.enter_context(patch("rizzmate.generator.GENERATION_MAX_ATTEMPTS", 1))
        stack.enter_context(patch("rizzmate.storage.get_profile", new=self.get_profile_mock))
        stack.enter_context(
            patch("rizzmate.storage.get_active_conversation", new=self.get_active_mock)
        )
        stack.enter_context(
            patch(
                "rizzmate.storage.get_or_create_active_conversation",
                new=self.get_or_create_mock,
            )
        )
        stack.enter_context(
            patch(
                "rizzmate.storage.append_conversation_messages", new=self.append_messages_mock
            )
        )
        stack.enter_context(
            patch(
                "rizzmate.storage.append_profile_interaction", new=self.append_interaction_mock
            )
        )
        stack.enter_context(
            patch("rizzmate.storage.update_account_usage", new=self.update_usage_mock)
        )
        stack.enter_context(
            patch("rizzmate.generator.openai_client.complete", new=self.complete_mock)
        )

    async def test_text_turn_appends_two_messages_and_counts_one_message(self):
        account = _account()

        with ExitStack() as stack:
            self._patches(stack)
            result = await pipeline.run_chat_turn(account, "profile-1", "text", "hi")

        self.assertEqual(result["reply"], "Hey! What are you up to tonight?")
        self.assertEqual(result["conversation_id"], "conv-1")
        self.assertIsNone(result["annotation"])
        self.assertEqual(result["usage"]["messages_this_month"], 1)
        self.assertEqual(account["usage"]["messages"], 1)

        self.append_messages_mock.assert_awaited_once()
        appended = self.append_messages_mock.await_args.args[1]
        self.assertEqual([message["role"] for message in appended], ["user", "ai"])
        self.assertEqual(appended[0]["content"], "hi")
        self.assertEqual(appended[1]["content"], "Hey! What are you up to tonight?")

        self.append_interaction_mock.assert_awaited_once()
        entry = self.append_interaction_mock.await_args.args[1]
        self.assertEqual(entry["modality"], "text")
        self.assertTrue(entry["success"])

    async def test_steps_run_in_order(self):
        ordered_calls = Mock()
        ordered_calls.attach_mock(self.complete_mock, "generate")
        ordered_calls.attach_mock(self.append_messages_mock, "persist")
        ordered_calls.attach_mock(self.append_interaction_mock, "ledger")
        ordered_calls.attach_mock(self.update_usage_mock, "commit")

        with ExitStack() as stack:
            self._patches(stack)
            await pipeline.run_chat_turn(_account(), "profile-1", "text", "hi")

        self.assertEqual(
            [name for name, _, _ in ordered_calls.mock_calls],
            ["generate", "persist", "ledger", "commit"],
        )

    async def test_fifty_first_message_is_rejected_without_side_effects(self):
        account = _account(messages=50)

        with ExitStack() as stack:
            self._patches(stack)
            with self.assertRaises(QuotaExceeded) as raised:
                await pipeline.run_chat_turn(account, "profile-1", "text", "hi")

        detail = raised.exception.to_detail()
        self.assertTrue(detail["limit_reached"])
        self.assertEqual(detail["used"], 50)
        self.assertEqual(account["usage"]["messages"], 50)
        self.get_profile_mock.assert_not_awaited()
        self.complete_mock.assert_not_awaited()
        self.append_messages_mock.assert_not_awaited()
        self.update_usage_mock.assert_not_awaited()

    async def test_blank_text_is_rejected_before_admission(self):
        account = _account(messages=50)

        with ExitStack() as stack:
            self._patches(stack)
            with self.assertRaises(InvalidInput):
                await pipeline.run_chat_turn(account, "profile-1", "text", "   ")

    async def test_missing_profile_id_is_invalid(self):
        with ExitStack() as stack:
            self._patches(stack)
            with self.assertRaises(InvalidInput):
                await pipeline.run_chat_turn(_account(), " ", "text", "hi")

    async def test_unknown_profile_is_not_found(self):
        self.get_profile_mock.return_value = None
        account = _account()

        with ExitStack() as stack:
            self._patches(stack)
            with self.assertRaises(NotFound):
                await pipeline.run_chat_turn(account, "profile-x", "text", "hi")

        self.assertEqual(account["usage"]["messages"], 0)
        self.complete_mock.assert_not_awaited()

    async def test_generation_failure_consumes_nothing_and_appends_nothing(self):
        self.complete_mock.side_effect = UpstreamUnavailable("timeout")
        account = _account(messages=3)

        with ExitStack() as stack:
            self._patches(stack)
            with self.assertRaises(GenerationFailed):
                await pipeline.run_chat_turn(account, "profile-1", "text", "hi")

        self.assertEqual(account["usage"]["messages"], 3)
        self.append_messages_mock.assert_not_awaited()
        self.update_usage_mock.assert_not_awaited()
        entry = self.append_interaction_mock.await_args.args[1]
        self.assertFalse(entry["success"])

    async def test_vision_failure_consumes_nothing(self):
        account = _account()
        payload = media.MediaPayload(_png_bytes(), "photo.png", "image/png")

        with ExitStack() as stack:
            self._patches(stack)
            stack.enter_context(
                patch(
                    "rizzmate.media.openai_client.analyze_image",
                    new=AsyncMock(side_effect=UpstreamUnavailable("vision down")),
                )
            )
            with self.assertRaises(UpstreamUnavailable):
                await pipeline.run_chat_turn(account, "profile-1", "image", payload)

        self.assertEqual(account["usage"]["images"], 0)
        self.complete_mock.assert_not_awaited()
        self.append_messages_mock.assert_not_awaited()

    async def test_conversation_write_failure_does_not_commit_usage(self):
        self.append_messages_mock.side_effect = PersistenceFailure("down")
        account = _account()

        with ExitStack() as stack:
            self._patches(stack)
            with self.assertRaises(PersistenceFailure):
                await pipeline.run_chat_turn(account, "profile-1", "text", "hi")

        self.assertEqual(account["usage"]["messages"], 0)
        self.update_usage_mock.assert_not_awaited()
        self.append_interaction_mock.assert_not_awaited()

    async def test_commit_failure_is_reported_after_persistence(self):
        self.update_usage_mock.side_effect = PersistenceFailure("down")
        account = _account()

        with ExitStack() as stack:
            self._patches(stack)
            with self.assertLogs("rizzmate.pipeline", level="ERROR"):
                with self.assertRaises(PersistenceFailure):
                    await pipeline.run_chat_turn(account, "profile-1", "text", "hi")

        self.append_messages_mock.assert_awaited_once()
        self.assertEqual(account["usage"]["messages"], 0)

    async def test_ledger_failure_does_not_block_reply(self):
        self.append_interaction_mock.side_effect = PersistenceFailure("down")
        account = _account()

        with ExitStack() as stack:
            self._patches(stack)
            result = await pipeline.run_chat_turn(account, "profile-1", "text", "hi")

        self.assertEqual(result["reply"], "Hey! What are you up to tonight?")
        self.assertEqual(account["usage"]["messages"], 1)

    async def test_image_turn_uses_analysis_and_counts_an_image(self):
        account = _account()
        payload = media.MediaPayload(_png_bytes(), "photo.png", "image/png")

        with ExitStack() as stack:
            self._patches(stack)
            stack.enter_context(
                patch(
                    "rizzmate.media.openai_client.analyze_image",
                    new=AsyncMock(return_value="A cozy cafe with latte art."),
                )
            )
            result = await pipeline.run_chat_turn(account, "profile-1", "image", payload)

        self.assertEqual(result["annotation"], "A cozy cafe with latte art.")
        self.assertEqual(account["usage"]["images"], 1)
        self.assertEqual(account["usage"]["messages"], 0)
        turns = self.complete_mock.await_args.args[1]
        self.assertIn("A cozy cafe with latte art.", turns[0]["content"])
        appended = self.append_messages_mock.await_args.args[1]
        self.assertEqual(appended[0]["content"], "Image uploaded")
        self.assertEqual(appended[0]["metadata"], {"analysis": "A cozy cafe with latte art."})

    async def test_screenshot_shares_image_counter(self):
        account = _account(images=9)
        payload = media.MediaPayload(_png_bytes(), "chat.png", "image/png")

        with ExitStack() as stack:
            self._patches(stack)
            stack.enter_context(
                patch(
                    "rizzmate.media.openai_client.analyze_image",
                    new=AsyncMock(return_value="He asked about the weekend."),
                )
            )
            await pipeline.run_chat_turn(account, "profile-1", "screenshot", payload)

        self.assertEqual(account["usage"]["images"], 10)

    async def test_voice_turn_with_empty_transcript_still_generates(self):
        account = _account()
        payload = media.MediaPayload(b"RIFF....", "note.wav", "audio/wav")

        with ExitStack() as stack:
            self._patches(stack)
            stack.enter_context(
                patch(
                    "rizzmate.media.openai_client.transcribe_audio",
                    new=AsyncMock(return_value=""),
                )
            )
            result = await pipeline.run_chat_turn(account, "profile-1", "voice", payload)

        self.assertEqual(result["transcription"], "")
        self.assertEqual(account["usage"]["voice_minutes"], 1)
        turns = self.complete_mock.await_args.args[1]
        self.assertEqual(turns[-1], {"role": "user", "content": ""})

    async def test_existing_conversation_history_is_replayed(self):
        conversation = _conversation()
        conversation["messages"] = [
            {"role": "user", "content": "hey"},
            {"role": "ai", "content": "hi there"},
        ]
        self.get_active_mock.return_value = conversation

        with ExitStack() as stack:
            self._patches(stack)
            await pipeline.run_chat_turn(_account(), "profile-1", "text", "how are you?")

        turns = self.complete_mock.await_args.args[1]
        self.assertEqual(
            turns,
            [
                {"role": "user", "content": "hey"},
                {"role": "assistant", "content": "hi there"},
                {"role": "user", "content": "how are you?"},
            ],
        )
        self.get_or_create_mock.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
