import json
import unittest

from vcopilot.backends.sse import SSEDecoder, extract_delta_text


def _event(text: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": text}}]}) + "\r\n\r\n"


def _decode(body: bytes, split_every: int) -> list[str]:
    decoder = SSEDecoder()
    out: list[str] = []
    for i in range(0, len(body), split_every):
        out.extend(decoder.feed(body[i:i + split_every]))
    out.extend(decoder.finish())
    return out


class SSEDecoderTests(unittest.TestCase):
    def test_fragments_survive_any_chunk_boundary(self) -> None:
        body = (_event("Héllo") + _event(", wörld ✓") + "data: [DONE]\r\n\r\n").encode("utf-8")

        for size in (1, 2, 3, 5, 7, len(body)):
            with self.subTest(size=size):
                self.assertEqual(["Héllo", ", wörld ✓"], _decode(body, size))

    def test_data_prefix_without_space(self) -> None:
        decoder = SSEDecoder()
        line = "data:" + json.dumps({"choices": [{"delta": {"content": "x"}}]}) + "\n"

        self.assertEqual(["x"], decoder.feed(line.encode()))

    def test_malformed_and_non_data_lines_are_skipped(self) -> None:
        body = (": keep-alive\n" + "event: ping\n" + "data: {broken\n" + _event("ok")).encode()

        self.assertEqual(["ok"], _decode(body, 4))

    def test_events_with_odd_choices_are_skipped(self) -> None:
        body = ('data: {"choices": 5}\n' + 'data: {"choices": {"0": 1}}\n' + _event("ok")).encode()

        self.assertEqual(["ok"], SSEDecoder().feed(body))

    def test_done_stops_decoding(self) -> None:
        decoder = SSEDecoder()

        out = decoder.feed(("data: [DONE]\n" + _event("late")).encode())

        self.assertEqual([], out)
        self.assertTrue(decoder.done)
        self.assertEqual([], decoder.feed(_event("later").encode()))

    def test_trailing_line_without_newline_is_flushed_on_finish(self) -> None:
        decoder = SSEDecoder()
        tail = "data: " + json.dumps({"choices": [{"delta": {"content": "end"}}]})

        self.assertEqual([], decoder.feed(tail.encode()))
        self.assertEqual(["end"], decoder.finish())

    def test_empty_deltas_are_ignored(self) -> None:
        body = "data: " + json.dumps({"choices": [{"delta": {"role": "assistant"}}]}) + "\n"

        self.assertEqual([], _decode(body.encode(), 3))


class ExtractDeltaTextTests(unittest.TestCase):
    def test_shapes(self) -> None:
        self.assertEqual("a", extract_delta_text({"choices": [{"delta": {"content": "a"}}]}))
        self.assertEqual("b", extract_delta_text({"choices": [{"text": "b"}]}))
        self.assertIsNone(extract_delta_text({"choices": []}))
        self.assertIsNone(extract_delta_text(["not", "a", "dict"]))
