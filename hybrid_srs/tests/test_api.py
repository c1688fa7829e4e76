"""
API tests for the learning engine.

Every test builds a fresh in-memory engine, so nothing leaks between tests.
"""

import pytest
from fastapi.testclient import TestClient

from hybrid_srs.container import EngineContainer
from hybrid_srs.main import create_app
from hybrid_srs.tests.helpers import TEST_DIMENSIONS, FailingProvider, make_config

USER_ID = "test-user-1"


def build_client(container=None, **overrides):
    if container is not None:
        return TestClient(create_app(container=container))
    return TestClient(create_app(make_config(**overrides)))


@pytest.fixture
def client():
    with build_client() as client:
        yield client


@pytest.fixture
def indexed_client(client):
    response = client.post("/search/index", json={
        "items": [
            {"id": "gato", "word": "gato", "translation": "cat", "language": "es"},
            {"id": "perro", "word": "perro", "translation": "dog", "language": "es"},
            {"id": "chat", "word": "chat", "translation": "cat", "language": "fr"},
        ]
    })
    assert response.status_code == 200
    assert response.json()["data"]["indexed"] == 3
    return client


def interaction(**overrides):
    body = {"userId": USER_ID, "vocabularyId": "hola", "success": True, "responseTimeMs": 2500}
    body.update(overrides)
    return body


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["version"] == "0.1.0"


# Interactions

def test_record_single_interaction(client):
    response = client.post("/interactions", json=interaction(word="hola"))

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["accepted"] == 1
    assert data["rejected"] == 0
    result = data["results"][0]
    assert result["quality"] == 5
    assert result["card"]["version"] == 1
    assert result["card"]["repetitions"] == 1
    assert result["card"]["word"] == "hola"


def test_snake_case_fields_are_accepted(client):
    response = client.post("/interactions", json={
        "user_id": USER_ID, "vocabulary_id": "hola", "success": False, "response_time_ms": 100
    })
    assert response.status_code == 200
    assert response.json()["data"]["results"][0]["quality"] == 0


def test_batch_with_partial_failures(client):
    response = client.post("/interactions", json=[
        interaction(),
        interaction(responseTimeMs=400000),
        {"userId": USER_ID, "success": True},
    ])

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["accepted"] == 1
    assert data["rejected"] == 2
    assert [error["index"] for error in data["errors"]] == [1, 2]
    assert all(error["code"] == "validation_error" for error in data["errors"])


def test_batch_with_nothing_accepted(client):
    response = client.post("/interactions", json=[interaction(responseTimeMs=-5)])

    assert response.status_code == 422
    body = response.json()
    assert body["status"] == "error"
    assert body["code"] == "validation_error"
    assert body["details"]["rejected"] == 1


def test_batch_size_limits(client):
    assert client.post("/interactions", json=[]).status_code == 422
    response = client.post("/interactions", json=[interaction()] * 101)
    assert response.status_code == 422
    assert response.json()["details"]["received"] == 101


def test_repeated_reviews_advance_the_card(client):
    for _ in range(3):
        client.post("/interactions", json=interaction())
    response = client.post("/interactions", json=interaction())
    card = response.json()["data"]["results"][0]["card"]
    assert card["version"] == 4
    assert card["repetitions"] == 4


# Schedule

def test_get_schedule(client):
    client.post("/interactions", json=interaction())

    response = client.get("/schedule", params={"userId": USER_ID})

    assert response.status_code == 200
    data = response.json()["data"]
    # the only card was just reviewed, so nothing is due
    assert data["entries"] == []
    assert data["enhanced"] is False
    assert data["statistics"]["total_cards"] == 1


def test_get_schedule_validates_query(client):
    assert client.get("/schedule").status_code == 422
    response = client.get("/schedule", params={"userId": USER_ID, "limit": 0})
    assert response.status_code == 422
    assert response.json()["message"] == "Validation error"


def test_hybrid_schedule_without_gnn(client):
    response = client.post("/schedule", json={
        "userId": USER_ID,
        "cards": [{"vocabularyId": "hola", "interval": 3, "nextReview": "2030-01-01T00:00:00Z"}]
    })

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["enhanced"] is False
    assert data["mode"] == "gnn_unavailable"
    entry = data["entries"][0]
    assert entry["source"] == "sm2"
    assert entry["confidence_score"] == 0.0
    assert entry["scheduled_date"] == "2030-01-01T00:00:00+00:00"


def test_hybrid_schedule_with_gnn():
    with build_client(features={"use_gnn_learning": True}) as client:
        response = client.post("/schedule", json={
            "userId": USER_ID,
            "cards": [{"vocabularyId": "hola", "interval": 3, "nextReview": "2030-01-01T00:00:00Z"}]
        })

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["enhanced"] is True
    assert data["entries"][0]["source"] == "hybrid"
    assert data["entries"][0]["scheduled_date"] == "2030-01-01T00:00:00+00:00"


def test_schedule_rejects_invalid_cards(client):
    response = client.post("/schedule", json={"userId": USER_ID, "cards": [{"vocabularyId": "a", "easeFactor": 9}]})
    assert response.status_code == 422


def test_adapt_difficulty_without_gnn(client):
    response = client.put("/schedule", json={
        "userId": USER_ID,
        "card": {"vocabularyId": "hola", "easeFactor": 2.2, "interval": 4}
    })

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["adapted"] is False
    assert data["enhanced"] is False
    assert data["card"]["ease_factor"] == 2.2


# Predictions

def test_prediction_and_confusion_pairs(client):
    client.post("/interactions", json=interaction(vocabularyId="ser", success=False, confusedWith="estar"))

    response = client.post("/predictions", json={"userId": USER_ID, "vocabularyId": "ser"})
    assert response.status_code == 200
    prediction = response.json()["data"]
    assert prediction["enhanced"] is False
    assert prediction["confidence"] == 0.0
    assert prediction["predicted_success_rate"] == 0.0

    response = client.get("/predictions", params={"userId": USER_ID})
    data = response.json()["data"]
    assert data["count"] == 1
    assert data["graph_enabled"] is True
    assert data["pairs"][0]["source_id"] == "ser"
    assert data["pairs"][0]["target_id"] == "estar"


def test_prediction_requires_ids(client):
    assert client.post("/predictions", json={"userId": USER_ID}).status_code == 422


# Search

def test_semantic_search(indexed_client):
    response = indexed_client.post("/search", json={"query": "gato cat", "threshold": 0.9})

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["count"] == 1
    assert data["results"][0]["id"] == "gato"
    assert data["results"][0]["rank"] == 1
    assert data["results"][0]["payload"]["translation"] == "cat"


def test_search_by_query_string(indexed_client):
    response = indexed_client.get("/search", params={"q": "perro dog", "threshold": 0.9})
    assert response.status_code == 200
    assert [r["id"] for r in response.json()["data"]["results"]] == ["perro"]


def test_hybrid_search_filters_first(indexed_client):
    response = indexed_client.post("/search", json={
        "query": "gato cat", "threshold": -1.0, "sqlFilter": {"language": "fr"}
    })
    assert [r["id"] for r in response.json()["data"]["results"]] == ["chat"]


def test_search_errors(indexed_client):
    response = indexed_client.post("/search", json={"query": "gato", "collection": "sounds"})
    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"

    assert indexed_client.post("/search", json={"query": ""}).status_code == 422


def test_search_disabled():
    with build_client(features={"use_vector_search": False}) as client:
        response = client.post("/search", json={"query": "gato"})
    assert response.status_code == 403
    assert response.json()["code"] == "feature_disabled"


def test_search_unavailable_when_embeddings_fail():
    container = EngineContainer(make_config(), provider=FailingProvider())
    with build_client(container=container) as client:
        response = client.post("/search", json={"query": "gato"})
    assert response.status_code == 503
    assert response.json()["code"] == "search_unavailable"


def test_similar_items(indexed_client):
    response = indexed_client.get("/search/similar/gato", params={"threshold": -1.0})
    data = response.json()["data"]
    assert response.status_code == 200
    assert data["count"] == 2
    assert "gato" not in [r["id"] for r in data["results"]]

    response = indexed_client.get("/search/similar/lobo")
    assert response.status_code == 404
    assert response.json()["code"] == "not_found_error"


def test_index_other_collection(client):
    response = client.post("/search/index", json={
        "collection": "descriptions",
        "items": [{"id": "d1", "text": "a small black cat", "metadata": {"level": 2}}]
    })
    assert response.status_code == 200
    assert response.json()["data"]["indexed"] == 1

    response = client.post("/search", json={
        "query": "a small black cat", "collection": "descriptions", "sqlFilter": {"level": 2}
    })
    assert response.json()["data"]["results"][0]["id"] == "d1"


def test_index_requires_text(client):
    response = client.post("/search/index", json={"items": [{"id": "x"}]})
    assert response.status_code == 422


# Embeddings

def test_embed_single_text(client):
    first = client.post("/embed", json={"text": "hola"}).json()["data"]
    second = client.post("/embed", json={"text": "hola", "includeVector": False}).json()["data"]

    assert first["dimensions"] == TEST_DIMENSIONS
    assert len(first["vector"]) == TEST_DIMENSIONS
    assert first["cached"] is False
    assert first["fallback"] is False
    assert second["cached"] is True
    assert "vector" not in second


def test_embed_batch(client):
    response = client.post("/embed", json={"texts": ["uno", "dos", "uno"], "includeVector": False})
    data = response.json()["data"]
    assert data["count"] == 3
    assert data["fallback"] == 0


def test_embed_validation(client):
    assert client.post("/embed", json={}).status_code == 422
    assert client.post("/embed", json={"text": "a", "texts": ["b"]}).status_code == 422
    assert client.post("/embed", json={"text": "x" * 10001}).status_code == 422


def test_similarity(client):
    response = client.put("/embed", json={"vectorA": [1, 0], "vectorB": [0, 1]})
    assert response.json()["data"]["similarity"] == 0.0

    response = client.put("/embed", json={"textA": "gato", "textB": "gato"})
    assert response.json()["data"]["similarity"] == pytest.approx(1.0)
    assert response.json()["data"]["fallback"] is False

    response = client.put("/embed", json={"vectorA": [1, 0, 0], "vectorB": [0, 1]})
    assert response.status_code == 400
    assert response.json()["code"] == "dimension_mismatch"


# Health

def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert set(body["components"]) == {"embedding", "vector_search", "graph", "learning"}
    assert "features" not in body


def test_detailed_health(client):
    body = client.get("/health", params={"detailed": True}).json()
    assert body["features"]["use_gnn_learning"] is False
    assert body["components"]["learning"]["details"]["mode"] == "baseline"
