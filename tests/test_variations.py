import asyncio

import pytest

from flashui import llm_client, retry, variations
from flashui.llm_client import GenerationServiceError
from flashui.models import ArtifactStatus, ComponentVariation
from flashui.store import SessionStore
from flashui.variations import apply_variation, generate_variations, resolve_artifact


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    monkeypatch.setattr(retry, "RETRY_INITIAL_DELAY_SECS", 0.0)
    monkeypatch.setattr(retry, "RETRY_JITTER_SECS", 0.0)


def _completed_session():
    store = SessionStore()
    session = store.create_session("glassmorphic music player")
    for art in session.artifacts:
        store.finalize_artifact(session.id, art.id, f"<div>{art.id}</div>", ArtifactStatus.COMPLETE)
    return store, store.get_session(session.id)


def _fake_open(fragments, error=None, state=None, calls=None):
    state = state if state is not None else {}

    async def gen():
        try:
            for fragment in fragments:
                await asyncio.sleep(0)
                if callable(fragment):
                    fragment()
                    continue
                yield fragment
            if error is not None:
                raise error
        finally:
            state["closed"] = True

    async def fake_open(parts, **kwargs):
        if calls is not None:
            calls.append((parts, kwargs))
        return gen()

    return fake_open


def test_collects_valid_records_and_stops_at_three(monkeypatch):
    store, session = _completed_session()
    aid = session.artifacts[0].id
    state, calls = {}, []
    fragments = [
        '{"name":"Paper Fold","html":"<div>p</div>"}\n{"name":"","html":"<b/>"}\n',
        '{"name":"Smoked Glass","con',
        'tent":"<div>g</div>"}\n{"name":"Wet Clay","html":"<div>c</div>"}',
        '{"name":"Fourth","html":"<div>4</div>"}',
    ]
    monkeypatch.setattr(llm_client, "open_content_stream", _fake_open(fragments, state=state, calls=calls))

    result = asyncio.run(generate_variations(store, session.id, aid))

    assert [v.name for v in result] == ["Paper Fold", "Smoked Glass", "Wet Clay"]
    assert result[1].html == "<div>g</div>"
    assert list(store.variations) == result
    assert store.variation_target == (session.id, aid)
    assert calls[0][1]["temperature"] == variations.VARIATION_TEMPERATURE
    assert session.prompt in calls[0][0][0]["text"]
    assert state["closed"] is True


def test_results_are_visible_as_they_arrive(monkeypatch):
    store, session = _completed_session()
    sizes = []
    store.subscribe(lambda e: sizes.append(len(store.variations)) if e.kind == "variation" else None)
    fragments = ['{"name":"A","html":"<a/>"}', '{"name":"B","html":"<b/>"}']
    monkeypatch.setattr(llm_client, "open_content_stream", _fake_open(fragments))
    asyncio.run(generate_variations(store, session.id, session.artifacts[1].id))
    assert sizes == [1, 2]


def test_error_mid_stream_keeps_partial_results(monkeypatch):
    store, session = _completed_session()
    fragments = ['{"name":"Only","html":"<i/>"}', '{"name":"Cut","ht']
    monkeypatch.setattr(
        llm_client,
        "open_content_stream",
        _fake_open(fragments, error=GenerationServiceError("stream dropped")),
    )
    result = asyncio.run(generate_variations(store, session.id, session.artifacts[0].id))
    assert [v.name for v in result] == ["Only"]
    assert [v.name for v in store.variations] == ["Only"]


def test_failed_request_clears_previous_results_and_stays_quiet(monkeypatch):
    store, session = _completed_session()
    token = store.clear_variations(session.id, session.artifacts[2].id)
    store.add_variation(token, ComponentVariation(name="Old", html="<old/>"))

    async def broken_open(parts, **kwargs):
        raise GenerationServiceError("API key not valid", status="INVALID_ARGUMENT", code=400)

    monkeypatch.setattr(llm_client, "open_content_stream", broken_open)
    result = asyncio.run(generate_variations(store, session.id, session.artifacts[0].id))
    assert result == []
    assert store.variations == ()
    assert store.variation_target == (session.id, session.artifacts[0].id)


def test_superseded_request_stops_adding(monkeypatch):
    store, session = _completed_session()
    other = session.artifacts[1].id
    state = {}
    fragments = [
        '{"name":"First","html":"<1/>"}',
        lambda: store.clear_variations(session.id, other),
        '{"name":"Second","html":"<2/>"}',
    ]
    monkeypatch.setattr(llm_client, "open_content_stream", _fake_open(fragments, state=state))
    result = asyncio.run(generate_variations(store, session.id, session.artifacts[0].id))
    assert [v.name for v in result] == ["First"]
    assert store.variations == ()
    assert store.variation_target == (session.id, other)
    assert state["closed"] is True


def test_unknown_artifact_raises_key_error():
    store, session = _completed_session()
    with pytest.raises(KeyError):
        asyncio.run(generate_variations(store, session.id, "missing_9"))
    with pytest.raises(KeyError):
        resolve_artifact(store, session.id, 3)
    with pytest.raises(KeyError):
        resolve_artifact(store, "missing", 0)


def test_apply_variation_to_index_one():
    store, session = _completed_session()
    target = resolve_artifact(store, session.id, 1)
    apply_variation(store, session.id, target.id, "<div>v</div>")
    arts = store.get_session(session.id).artifacts
    assert arts[1].html == "<div>v</div>"
    assert arts[1].status == ArtifactStatus.COMPLETE
    assert arts[0] == session.artifacts[0]
    assert arts[2] == session.artifacts[2]


def test_apply_variation_unknown_artifact():
    store, session = _completed_session()
    with pytest.raises(KeyError):
        apply_variation(store, session.id, "missing_1", "<x/>")


def test_content_field_is_accepted_as_markup(monkeypatch):
    store, session = _completed_session()
    fragments = ['{"name":"Felt Board","content":"<div>felt</div>"}', '{"name":"Blank","content":"   "}']
    monkeypatch.setattr(llm_client, "open_content_stream", _fake_open(fragments))
    result = asyncio.run(generate_variations(store, session.id, session.artifacts[0].id))
    assert result == [ComponentVariation(name="Felt Board", html="<div>felt</div>")]
