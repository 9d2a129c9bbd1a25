import json

from react_rag.chat.stream import ResponseStream, StreamChunk, abort_chunk, status_chunk


def test_chunk_payload_uses_camel_case_and_drops_missing_chat_id() -> None:
    chunk = StreamChunk(
        uuid="u-1",
        type="textResponseChunk",
        text_response="Refunds take 14 days.",
        sources=[{"title": "faq.md"}],
        close=True,
        error=False,
    )

    assert chunk.to_payload() == {
        "uuid": "u-1",
        "type": "textResponseChunk",
        "textResponse": "Refunds take 14 days.",
        "sources": [{"title": "faq.md"}],
        "close": True,
        "error": False,
    }


def test_finalize_chunk_carries_chat_id() -> None:
    chunk = StreamChunk(uuid="u-1", type="finalizeResponseStream", close=True, chat_id=12)

    assert chunk.to_payload()["chatId"] == 12


def test_sse_frame_format() -> None:
    frame = status_chunk("u-2", "🔍 Searching documents...").to_sse()

    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")
    payload = json.loads(frame[len("data: ") :])
    assert payload["type"] == "statusResponse"
    assert payload["close"] is False


def test_abort_chunk_closes_with_error() -> None:
    payload = abort_chunk("u-3", "Unable to generate a response.").to_payload()

    assert payload["type"] == "abort"
    assert payload["close"] is True
    assert payload["textResponse"] is None
    assert payload["error"] == "Unable to generate a response."


async def test_stream_yields_until_closed_and_drops_late_writes() -> None:
    stream = ResponseStream()

    assert stream.write(status_chunk("u", "one")) is True
    stream.close()
    assert stream.write(status_chunk("u", "two")) is False

    frames = [frame async for frame in stream.events()]

    assert stream.closed is True
    assert len(frames) == 1
    assert '"textResponse": "one"' in frames[0]
    assert [chunk.text_response for chunk in stream.written] == ["one"]
