import asyncio

import pytest

from codeloop.agent.interactions import QuestionBroker, ScreenshotBroker
from codeloop.errors import InteractionCancelledError, InteractionTimeoutError


class TestScreenshotBroker:
    def test_resolved_by_client(self):
        broker = ScreenshotBroker()
        ids = []

        async def go():
            async def client():
                await asyncio.sleep(0)
                assert broker.has_pending(ids[0])
                assert broker.resolve(ids[0], "data:image/png;base64,AAA")

            task = asyncio.create_task(client())
            image = await broker.request_screenshot(ids.append)
            await task
            return image

        assert asyncio.run(go()) == "data:image/png;base64,AAA"
        assert ids[0].startswith("screenshot-")
        assert not broker.has_pending(ids[0])

    def test_timeout(self):
        broker = ScreenshotBroker(timeout=0.01)
        with pytest.raises(InteractionTimeoutError) as exc:
            asyncio.run(broker.request_screenshot(lambda request_id: None))
        assert str(exc.value).startswith("Screenshot request timed out.")

    def test_reject(self):
        broker = ScreenshotBroker()
        with pytest.raises(InteractionCancelledError) as exc:
            asyncio.run(broker.request_screenshot(lambda rid: broker.reject(rid, "Preview not running")))
        assert str(exc.value) == "Preview not running"

    def test_unknown_request(self):
        broker = ScreenshotBroker()
        assert not broker.resolve("screenshot-1-1", "x")
        assert not broker.reject("screenshot-1-1", "x")


class TestQuestionBroker:
    def test_answers(self):
        broker = QuestionBroker()
        seen = []

        def notify(request_id, questions, context):
            seen.append((request_id, questions, context))
            broker.resolve(request_id, {"q1": "yes"})

        answers = asyncio.run(broker.request_answers([{"id": "q1"}], "ctx", notify))
        assert answers == {"q1": "yes"}
        assert seen[0][0].startswith("question-")
        assert seen[0][1:] == ([{"id": "q1"}], "ctx")

    def test_async_notify(self):
        broker = QuestionBroker()

        async def notify(request_id, questions, context):
            broker.resolve(request_id, {"ok": True})

        assert asyncio.run(broker.request_answers([], None, notify)) == {"ok": True}

    def test_cancel(self):
        broker = QuestionBroker()
        with pytest.raises(InteractionCancelledError) as exc:
            asyncio.run(broker.request_answers([], None, lambda rid, q, c: broker.cancel(rid)))
        assert str(exc.value) == "User cancelled the question request."

    def test_timeout(self):
        broker = QuestionBroker(timeout=0.01)
        with pytest.raises(InteractionTimeoutError) as exc:
            asyncio.run(broker.request_answers([], None, lambda rid, q, c: None))
        assert "did not respond" in str(exc.value)

    def test_ids_are_unique(self):
        broker = QuestionBroker()
        assert broker._next_id() != broker._next_id()
