"""HTTP layer tests using the Flask test client with fake capabilities."""

import io

import pytest

from conftest import TRANSCRIPT, unit_vector

from callinsights.enrichment.hashing import ContentType, hash_content
from callinsights.qa.scoring import DEFAULT_GRADE_SCALE
from callinsights.search.service import SemanticSearchService
from callinsights.search.vector_search import VectorSearchEngine
from callinsights.server.app import Services, create_app
from callinsights.server.models import CacheEntry, JobType

USER = {"X-User-Id": "user-1"}
OTHER_USER = {"X-User-Id": "user-2"}


@pytest.fixture
def services(call_store, job_manager, cache, orchestrator, embedder):
    return Services(
        call_store=call_store,
        job_manager=job_manager,
        cache=cache,
        orchestrator=orchestrator,
        search=SemanticSearchService(VectorSearchEngine(cache), call_store, embedder),
        grade_scale=list(DEFAULT_GRADE_SCALE),
    )


@pytest.fixture
def client(services):
    app = create_app(services)
    app.config["TESTING"] = True
    return app.test_client()


def _create_call(client, text=TRANSCRIPT, headers=USER):
    response = client.post("/calls", json={"text": text, "duration_seconds": 42, "language": "en"}, headers=headers)
    assert response.status_code == 201
    return response.get_json()


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    data = response.get_json()
    assert data["status"] == "healthy"
    assert data["queue_running"] is True


class TestCalls:
    def test_create_from_text(self, client):
        call = _create_call(client)

        assert call["owner_id"] == "user-1"
        assert call["transcription_status"] == "completed"
        assert call["duration_seconds"] == 42

    def test_user_header_required(self, client):
        response = client.post("/calls", json={"text": TRANSCRIPT})

        assert response.status_code == 400
        assert "X-User-Id" in response.get_json()["error"]

    def test_upload_audio(self, client):
        data = {"file": (io.BytesIO(b"\x01" * 2048), "call.wav"), "language": "en"}

        response = client.post("/calls", data=data, headers=USER, content_type="multipart/form-data")

        assert response.status_code == 201
        call = response.get_json()
        assert call["original_filename"] == "call.wav"
        assert call["audio_digest"]
        assert call["transcription_status"] == "not_started"

    @pytest.mark.parametrize(
        "filename, payload, message",
        [
            ("notes.txt", b"\x01" * 2048, "File type not allowed"),
            ("call.wav", b"", "Empty file"),
            ("call.wav", b"\x01" * 100, "too small"),
        ],
    )
    def test_upload_validation(self, client, filename, payload, message):
        data = {"file": (io.BytesIO(payload), filename)}

        response = client.post("/calls", data=data, headers=USER, content_type="multipart/form-data")

        assert response.status_code == 400
        assert message in response.get_json()["error"]

    def test_get_call_checks_owner(self, client):
        call = _create_call(client)

        assert client.get(f"/calls/{call['id']}", headers=USER).status_code == 200
        assert client.get(f"/calls/{call['id']}", headers=OTHER_USER).status_code == 403
        assert client.get("/calls/does-not-exist", headers=USER).status_code == 404

    def test_edit_transcript(self, client):
        call = _create_call(client)

        response = client.put(f"/calls/{call['id']}/transcript", json={"text": "Edited words."}, headers=USER)

        assert response.status_code == 200
        assert response.get_json()["edit_count"] == 1
        assert response.get_json()["text"] == "Edited words."

    def test_edit_before_transcription(self, client):
        data = {"file": (io.BytesIO(b"\x01" * 2048), "call.wav")}
        call = client.post("/calls", data=data, headers=USER, content_type="multipart/form-data").get_json()

        response = client.put(f"/calls/{call['id']}/transcript", json={"text": "Too early."}, headers=USER)

        assert response.status_code == 409


class TestEnrich:
    def test_miss_then_hit(self, client, orchestrator, insights_generator):
        call = _create_call(client)

        first = client.post(f"/calls/{call['id']}/enrich", json={"job_type": "insights"}, headers=USER)
        assert first.status_code == 202
        assert first.get_json()["status"] == "pending"
        orchestrator.wait(first.get_json()["job_id"], timeout=10)

        job = client.get(f"/jobs/{first.get_json()['job_id']}", headers=USER).get_json()
        assert job["status"] == "completed"
        assert job["cached"] is False

        second = client.post(f"/calls/{call['id']}/enrich", json={"job_type": "insights"}, headers=USER)
        assert second.status_code == 200
        assert second.get_json()["cached"] is True
        assert second.get_json()["status"] == "completed"
        assert insights_generator.calls == 1

    def test_duplicate_active_job(self, client, orchestrator, insights_generator):
        call = _create_call(client)
        release = insights_generator.block()

        try:
            first = client.post(f"/calls/{call['id']}/enrich", json={"job_type": "insights"}, headers=USER)
            second = client.post(f"/calls/{call['id']}/enrich", json={"job_type": "insights"}, headers=USER)
        finally:
            release.set()
        orchestrator.wait(first.get_json()["job_id"], timeout=10)

        assert second.status_code == 409
        assert second.get_json()["active_job_id"] == first.get_json()["job_id"]

    def test_invalid_job_type(self, client):
        call = _create_call(client)

        response = client.post(f"/calls/{call['id']}/enrich", json={"job_type": "summary"}, headers=USER)

        assert response.status_code == 400

    @pytest.mark.parametrize("content_type", ["../../escaped", "transcript-for-embedding"])
    def test_content_type_must_match_job_type(self, client, job_manager, content_type):
        call = _create_call(client)

        body = {"job_type": "insights", "content_type": content_type}
        response = client.post(f"/calls/{call['id']}/enrich", json=body, headers=USER)

        assert response.status_code == 400
        assert "content_type" in response.get_json()["error"]
        assert job_manager.list_jobs() == []

    def test_force_regenerate_must_be_boolean(self, client, job_manager):
        call = _create_call(client)

        body = {"job_type": "insights", "force_regenerate": "false"}
        response = client.post(f"/calls/{call['id']}/enrich", json=body, headers=USER)

        assert response.status_code == 400
        assert job_manager.list_jobs() == []

    def test_empty_content(self, client):
        call = _create_call(client, text="Too short for insights")

        response = client.post(f"/calls/{call['id']}/enrich", json={"job_type": "embedding"}, headers=USER)

        assert response.status_code == 422

    def test_access_denied(self, client):
        call = _create_call(client)

        response = client.post(f"/calls/{call['id']}/enrich", json={"job_type": "insights"}, headers=OTHER_USER)

        assert response.status_code == 403

    def test_unknown_job(self, client):
        assert client.get("/jobs/not-a-job", headers=USER).status_code == 404

    def test_list_jobs_scoped_to_user(self, client, orchestrator):
        mine = _create_call(client)
        theirs = _create_call(client, headers=OTHER_USER)
        for call, headers in ((mine, USER), (theirs, OTHER_USER)):
            result = client.post(f"/calls/{call['id']}/enrich", json={"job_type": "insights"}, headers=headers)
            orchestrator.wait(result.get_json()["job_id"], timeout=10)

        response = client.get("/jobs?status=completed", headers=USER).get_json()

        assert response["total"] == 1
        assert response["jobs"][0]["entity_id"] == mine["id"]
        assert client.get("/jobs?status=bogus", headers=USER).status_code == 400


class TestSearch:
    @pytest.fixture
    def embedded(self, client, cache):
        ids = []
        for similarity, sentiment in ((0.92, "negative"), (0.71, "positive"), (0.40, "negative")):
            call = _create_call(client, text=f"Transcript with similarity {similarity}")
            cache.upsert(
                CacheEntry(
                    entity_id=call["id"],
                    content_type=ContentType.TRANSCRIPT_FOR_EMBEDDING,
                    model="fake-embedding",
                    model_version="2",
                    content_hash=hash_content(call["text"], ContentType.TRANSCRIPT_FOR_EMBEDDING),
                    artifact=unit_vector(similarity),
                    metadata={"sentiment": sentiment},
                )
            )
            ids.append(call["id"])
        return ids

    def test_search(self, client, embedded):
        response = client.post("/search", json={"query": "upset caller", "limit": 2, "threshold": 0.7}, headers=USER)

        assert response.status_code == 200
        assert [r["entity_id"] for r in response.get_json()["results"]] == embedded[:2]

    def test_search_with_filters(self, client, embedded):
        body = {"query": "upset caller", "threshold": 0.0, "filters": {"sentiment": ["negative"]}}

        response = client.post("/search", json=body, headers=USER)

        assert [r["entity_id"] for r in response.get_json()["results"]] == [embedded[0], embedded[2]]

    def test_date_filter_with_offset(self, client, cache):
        call = _create_call(client)
        cache.upsert(
            CacheEntry(
                entity_id=call["id"],
                content_type=ContentType.TRANSCRIPT_FOR_EMBEDDING,
                model="fake-embedding",
                model_version="2",
                content_hash=hash_content(call["text"], ContentType.TRANSCRIPT_FOR_EMBEDDING),
                artifact=unit_vector(0.9),
                metadata={"call_time": "2024-05-01T10:00:00"},
            )
        )

        def search(filters):
            body = {"query": "upset caller", "threshold": 0.0, "filters": filters}
            return client.post("/search", json=body, headers=USER)

        after = search({"date_from": "2024-01-01T00:00:00+00:00"})
        before = search({"date_to": "2024-01-01T00:00:00+00:00"})

        assert after.status_code == 200
        assert [r["entity_id"] for r in after.get_json()["results"]] == [call["id"]]
        assert before.get_json()["results"] == []

    def test_call_time_with_offset(self, client):
        body = {"text": TRANSCRIPT, "call_time": "2024-05-01T10:00:00+02:00"}

        response = client.post("/calls", json=body, headers=USER)

        assert response.status_code == 201
        assert "+" not in response.get_json()["call_time"]

    def test_invalid_search_requests(self, client):
        assert client.post("/search", json={}, headers=USER).status_code == 400
        assert client.post("/search", json={"query": "x", "limit": "many"}, headers=USER).status_code == 400
        body = {"query": "x", "filters": {"date_from": "last tuesday"}}
        assert client.post("/search", json=body, headers=USER).status_code == 400
        assert client.post("/search", json={"query": "   "}, headers=USER).status_code == 422

    def test_similar(self, client, embedded):
        response = client.get(f"/calls/{embedded[0]}/similar?threshold=0.5", headers=USER)

        assert response.status_code == 200
        ids = [r["entity_id"] for r in response.get_json()["results"]]
        assert embedded[0] not in ids
        assert embedded[1] in ids

    def test_cache_stats(self, client, embedded):
        client.post("/search", json={"query": "upset caller"}, headers=USER)
        client.post("/search", json={"query": "upset caller"}, headers=USER)

        stats = client.get("/cache/stats").get_json()
        assert stats["query_embeddings"]["hits"] == 1
        assert "hit_rate" in stats["enrichment"]


class TestQA:
    def test_score(self, client):
        criteria = [
            {"name": "Intro", "category": "A", "weight": 10, "score": 10},
            {"name": "Rebuttal", "category": "A", "weight": 5, "score": 0, "applicable": False},
            {"name": "Close", "category": "B", "weight": 20, "score": 15},
        ]

        response = client.post("/qa/score", json={"criteria": criteria})

        assert response.status_code == 200
        data = response.get_json()
        assert data["total"] == 25
        assert data["categories"]["A"]["percentage"] == 100.0
        assert data["categories"]["B"]["percentage"] == 75.0
        assert data["grade"] == "F"

    def test_score_out_of_range(self, client):
        response = client.post("/qa/score", json={"criteria": [{"name": "X", "category": "A", "weight": 5, "score": 9}]})

        assert response.status_code == 400

    def test_applicable_must_be_boolean(self, client):
        criterion = {"name": "Rebuttal", "category": "A", "weight": 5, "score": 0, "applicable": "false"}

        response = client.post("/qa/score", json={"criteria": [criterion]})

        assert response.status_code == 400
        assert "applicable" in response.get_json()["error"]

    def test_criteria_catalogue(self, client):
        data = client.get("/qa/criteria").get_json()

        assert data["total_points"] == 100
        assert set(data["categories"]) == {"starting_call", "upselling", "rebuttals", "qualitative"}


def test_transcription_job_over_http(client, orchestrator, transcriber):
    data = {"file": (io.BytesIO(b"\x01" * 2048), "call.wav")}
    call = client.post("/calls", data=data, headers=USER, content_type="multipart/form-data").get_json()

    result = client.post(f"/calls/{call['id']}/enrich", json={"job_type": JobType.TRANSCRIPTION.value}, headers=USER)
    orchestrator.wait(result.get_json()["job_id"], timeout=10)

    updated = client.get(f"/calls/{call['id']}", headers=USER).get_json()
    assert updated["text"] == TRANSCRIPT
    assert updated["jobs"][0]["status"] == "completed"
    assert transcriber.calls == 1
