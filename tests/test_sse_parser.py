import json

from conftest import delta, sse_body

from chat_relay.services.sse_parser import SSEChunkParser


def _run(chunks) -> tuple[list[str], SSEChunkParser]:
    parser = SSEChunkParser()
    fragments: list[str] = []
    for chunk in chunks:
        fragments.extend(parser.feed(chunk))
    fragments.extend(parser.flush())
    return fragments, parser


def test_fragments_in_order_and_accumulated():
    fragments, parser = _run([sse_body("Hel", "lo")])
    assert fragments == ["Hel", "lo"]
    assert parser.accumulated == "Hello"
    assert parser.done


def test_output_independent_of_split_offsets():
    """Every two-way split of the stream, including inside multi-byte characters, yields the same text."""
    body = sse_body("héllo ", "世界 ", "🎉", "\n\"quoted\"")
    expected, _ = _run([body])
    assert "".join(expected) == 'héllo 世界 🎉\n"quoted"'

    for offset in range(len(body) + 1):
        fragments, parser = _run([body[:offset], body[offset:]])
        assert "".join(fragments) == parser.accumulated == "".join(expected), offset


def test_byte_at_a_time():
    body = sse_body("Grüße", " aus ", "München")
    fragments, parser = _run([body[i:i + 1] for i in range(len(body))])
    assert fragments == ["Grüße", " aus ", "München"]
    assert parser.done


def test_recovers_content_from_truncated_json():
    """Scenario: a malformed line between two good ones."""
    body = (
        delta("A")
        + b'data: {"choices":[{"delta":{"content":"B\n\n'
        + delta("C")
    )
    fragments, parser = _run([body])
    assert fragments == ["A", "B", "C"]
    assert parser.recovered == 1


def test_recovered_content_unescapes_and_strips_controls():
    body = b'data: {"choices":[{"delta":{"content":"tab\\there\\u0001 \\"q\\" end\\u00\n'
    fragments, _ = _run([body])
    assert fragments == ['tab\there "q" end']


def test_unrecoverable_line_is_skipped():
    body = b"data: {not json at all\n\n" + delta("ok")
    fragments, parser = _run([body])
    assert fragments == ["ok"]
    assert parser.skipped == 1


def test_lines_after_done_are_ignored():
    body = sse_body("one") + delta("late") + b"data: [DONE]\n\n"
    fragments, parser = _run([body])
    assert fragments == ["one"]
    assert parser.ignored_after_done == 2


def test_non_data_lines_and_empty_deltas_produce_nothing():
    role_only = {"choices": [{"delta": {"role": "assistant"}}]}
    body = (
        b": keep-alive\n"
        b"event: message\n"
        b"id: 7\n"
        + f"data: {json.dumps(role_only)}\n\n".encode()
        + b'data: {"choices":[]}\n\n'
        + delta("x")
    )
    fragments, _ = _run([body])
    assert fragments == ["x"]


def test_crlf_line_endings_and_no_space_after_prefix():
    body = b'data:{"choices":[{"delta":{"content":"a"}}]}\r\n\r\ndata: [DONE]\r\n\r\n'
    fragments, parser = _run([body])
    assert fragments == ["a"]
    assert parser.done


def test_flush_processes_unterminated_final_line():
    parser = SSEChunkParser()
    assert parser.feed(b'data: {"choices":[{"delta":{"content":"tail"}}]}') == []
    assert parser.flush() == ["tail"]
    assert not parser.done


def test_in_band_error_object_is_skipped():
    body = b'data: {"error": {"message": "overloaded"}}\n\n' + delta("z")
    fragments, parser = _run([body])
    assert fragments == ["z"]
    assert parser.skipped == 1


def test_round_trip_matches_upstream_fragments():
    upstream = ["The ", "quick ", "brown ", "fox ", "\\ jumps ", "{over} ", "\"the\" ", "lazy dog"]
    fragments, parser = _run([sse_body(*upstream)])
    assert fragments == upstream
    assert parser.accumulated == "".join(upstream)
