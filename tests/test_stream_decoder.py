import asyncio

from flashui.stream_decoder import FrameBuffer, decode_frames, iter_frames


async def _agen(fragments):
    for fragment in fragments:
        await asyncio.sleep(0)
        yield fragment


async def _collect(fragments):
    return [frame async for frame in decode_frames(_agen(fragments))]


def test_objects_split_across_fragments_come_out_in_order():
    frames = list(iter_frames(['{"a":1}', '{"b":', "2}"]))
    assert frames == [{"a": 1}, {"b": 2}]


def test_unmatched_opening_brace_is_skipped():
    assert list(iter_frames(['{ {"x":1}'])) == [{"x": 1}]


def test_malformed_closed_candidate_is_skipped():
    assert list(iter_frames(['{oops} {"ok": true}'])) == [{"ok": True}]


def test_braces_inside_string_values_do_not_end_a_frame():
    markup = "<style>.card{color:red}</style><div>}{</div>"
    frames = list(iter_frames(['{"name":"Neon","html":"' + markup + '"}']))
    assert frames == [{"name": "Neon", "html": markup}]


def test_escaped_quotes_inside_strings():
    frames = list(iter_frames(['{"html":"<a title=\\"{x}\\">go</a>"}']))
    assert frames == [{"html": '<a title="{x}">go</a>'}]


def test_string_split_mid_brace_waits_for_more_input():
    buf = FrameBuffer()
    assert buf.feed('{"name":"A","html":"<div>{') == []
    assert buf.feed('}</div>"}') == [{"name": "A", "html": "<div>{}</div>"}]
    assert buf.pending == ""


def test_nested_object_is_one_frame():
    assert list(iter_frames(['{"a":{"b":{"c":1}}}'])) == [{"a": {"b": {"c": 1}}}]


def test_prose_and_array_punctuation_between_frames():
    text = 'Here you go:\n[{"name":"One","html":"<p>1</p>"},\n{"name":"Two","html":"<p>2</p>"}]\nEnjoy!'
    frames = list(iter_frames([text]))
    assert [f["name"] for f in frames] == ["One", "Two"]


def test_consumed_span_is_never_yielded_again():
    buf = FrameBuffer()
    assert buf.feed('{"a":1}') == [{"a": 1}]
    assert buf.feed("\n") == []
    assert buf.feed('{"b":2}') == [{"b": 2}]
    assert buf.close() == []


def test_incomplete_trailing_record_is_discarded():
    buf = FrameBuffer()
    assert buf.feed('{"a":1}\n{"b":') == [{"a": 1}]
    assert buf.pending == '\n{"b":'
    assert buf.close() == []
    assert buf.pending == ""


def test_text_without_braces_is_not_kept():
    buf = FrameBuffer()
    assert buf.feed("thinking about it...") == []
    assert buf.pending == ""


def test_empty_and_non_string_fragments_are_ignored():
    frames = list(iter_frames([None, "", '{"a":', None, "1}", ""]))
    assert frames == [{"a": 1}]


def test_each_decode_starts_with_an_empty_buffer():
    assert list(iter_frames(['{"a":'])) == []
    assert list(iter_frames(["1}"])) == []


def test_async_decoder_yields_as_frames_close():
    frames = asyncio.run(_collect(['{"name":"A",', '"html":"x"}{"na', 'me":"B","html":"y"}', '{"trailing"']))
    assert frames == [{"name": "A", "html": "x"}, {"name": "B", "html": "y"}]


def test_async_decoder_is_lazy():
    seen = []

    async def source():
        for fragment in ['{"n":1}', '{"n":2}', '{"n":3}']:
            seen.append(fragment)
            yield fragment

    async def first():
        frames = decode_frames(source())
        try:
            return await frames.__anext__()
        finally:
            await frames.aclose()

    assert asyncio.run(first()) == {"n": 1}
    assert seen == ['{"n":1}']
