"""Tests for reply generation parameters and retry behavior."""

import unittest
from unittest.mock import AsyncMock, patch

from rizzmate import generator
from rizzmate.errors import GenerationFailed, UpstreamUnavailable


class GenerateTests(unittest.IsolatedAsyncioTestCase):
    async def test_generate_appends_new_user_turn_and_uses_reply_parameters(self):
        complete_mock = AsyncMock(return_value="  Hey, how was your day?  ")
        history = [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ]

        with patch("rizzmate.generator.openai_client.complete", new=complete_mock):
            reply = await generator.generate("persona", history, "hi")

        self.assertEqual(reply, "Hey, how was your day?")
        complete_mock.assert_awaited_once_with(
            "persona",
            [
                {"role": "user", "content": "hi"},
                {"role": "assistant", "content": "hello"},
                {"role": "user", "content": "hi"},
            ],
            max_tokens=300,
            temperature=0.8,
            presence_penalty=0.6,
            frequency_penalty=0.3,
        )
        self.assertEqual(len(history), 2)

    async def test_generate_from_analysis_uses_short_budget(self):
        complete_mock = AsyncMock(return_value="That beach looks like your kind of place.")

        with patch("rizzmate.generator.openai_client.complete", new=complete_mock):
            await generator.generate_from_analysis("persona", "A sunny beach.", "image")

        turns = complete_mock.await_args.args[1]
        self.assertEqual(len(turns), 1)
        self.assertIn('"A sunny beach."', turns[0]["content"])
        self.assertEqual(complete_mock.await_args.kwargs["max_tokens"], 200)
        self.assertEqual(complete_mock.await_args.kwargs["temperature"], 0.8)

    async def test_generate_from_screenshot_analysis_mentions_screenshot(self):
        complete_mock = AsyncMock(return_value="Ask about the concert.")

        with patch("rizzmate.generator.openai_client.complete", new=complete_mock):
            await generator.generate_from_analysis("persona", "Concert tickets.", "screenshot")

        self.assertIn("screenshot analysis", complete_mock.await_args.args[1][0]["content"])

    async def test_generate_starters_uses_profile_prompt(self):
        complete_mock = AsyncMock(return_value="1. ...\n2. ...")
        profile = {
            "target_person": {"personality": "extrovert", "relationship": "friend", "context": "work"},
            "conversation_style": {"tone": "romantic", "approach": "sincere"},
        }

        with patch("rizzmate.generator.openai_client.complete", new=complete_mock):
            starters = await generator.generate_starters(profile)

        self.assertEqual(starters, "1. ...\n2. ...")
        system_prompt, turns = complete_mock.await_args.args
        self.assertIn("The target person is extrovert.", system_prompt)
        self.assertEqual(turns[0]["content"], generator.STARTERS_REQUEST)
        self.assertEqual(complete_mock.await_args.kwargs["temperature"], 0.9)


class RetryTests(unittest.IsolatedAsyncioTestCase):
    async def test_transient_failure_is_retried(self):
        complete_mock = AsyncMock(side_effect=[UpstreamUnavailable("timeout"), "Second try"])

        with (
            patch("rizzmate.generator.openai_client.complete", new=complete_mock),
            patch("rizzmate.generator.GENERATION_MAX_ATTEMPTS", 2),
            patch("rizzmate.generator.asyncio.sleep", new=AsyncMock()) as sleep_mock,
        ):
            reply = await generator.generate("persona", [], "hi")

        self.assertEqual(reply, "Second try")
        self.assertEqual(complete_mock.await_count, 2)
        sleep_mock.assert_awaited_once()

    async def test_exhausted_retries_raise_generation_failed(self):
        complete_mock = AsyncMock(side_effect=UpstreamUnavailable("down"))

        with (
            patch("rizzmate.generator.openai_client.complete", new=complete_mock),
            patch("rizzmate.generator.GENERATION_MAX_ATTEMPTS", 3),
            patch("rizzmate.generator.asyncio.sleep", new=AsyncMock()),
        ):
            with self.assertRaises(GenerationFailed) as raised:
                await generator.generate("persona", [], "hi")

        self.assertEqual(complete_mock.await_count, 3)
        self.assertEqual(raised.exception.status_code, 503)
        self.assertIsInstance(raised.exception, UpstreamUnavailable)

    async def test_empty_reply_is_a_generation_failure(self):
        complete_mock = AsyncMock(return_value="   ")

        with (
            patch("rizzmate.generator.openai_client.complete", new=complete_mock),
            patch("rizzmate.generator.GENERATION_MAX_ATTEMPTS", 1),
            patch("rizzmate.generator.asyncio.sleep", new=AsyncMock()) as sleep_mock,
        ):
            with self.assertRaises(GenerationFailed):
                await generator.generate("persona", [], "hi")

        sleep_mock.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
