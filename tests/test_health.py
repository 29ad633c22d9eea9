def test_health_reports_pool_and_cache(client):
    client.post("/api/chat", json={"message": "hello"})

    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["ok"] is True
    assert data["model"] == "gemini-1.5-flash"
    assert data["cacheSize"] == 1
    assert data["apiKeysCount"] == 3
    assert "timestamp" in data
