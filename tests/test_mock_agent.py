import asyncio

import pytest

from fleet_gateway.services.mock_agent import CANNED_RESPONSES, DEFAULT_RESPONSE, MockAgentClient, pick_response


def canned(keyword):
    return next(response for keywords, response in CANNED_RESPONSES if keyword in keywords)


@pytest.mark.parametrize("message, keyword", [
    ("When is the next MAINTENANCE window?", "maintenance"),
    ("How is our fuel efficiency?", "fuel"),
    ("Can you optimize the route for truck 12?", "route"),
    ("Any compliance issues?", "compliance"),
    ("Are we over budget?", "budget"),
    ("hi!", "hi"),
])
def test_keywords_pick_the_canned_answer(message, keyword):
    assert pick_response(message) == canned(keyword)


def test_short_keywords_match_whole_words_only():
    assert pick_response("Is this thing on?") == DEFAULT_RESPONSE


def test_mock_streams_the_answer_word_by_word():
    agent = MockAgentClient(chunk_delay=0)

    async def main():
        session_id = await agent.create_session()
        fragments = [f async for f in agent.stream_response(session_id, "fuel report please")]
        return session_id, fragments

    session_id, fragments = asyncio.run(main())
    assert session_id.startswith("mock-thread-")
    assert all(f.endswith(" ") for f in fragments)
    assert "".join(fragments).strip() == canned("fuel")


def test_mock_stops_when_cancelled():
    agent = MockAgentClient(chunk_delay=0)

    async def main():
        cancel = asyncio.Event()
        fragments = []
        async for fragment in agent.stream_response("mock-thread-1", "hello", cancel):
            fragments.append(fragment)
            if len(fragments) == 2:
                cancel.set()
        return fragments

    assert len(asyncio.run(main())) == 2
