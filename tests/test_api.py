import pytest
from fastapi.testclient import TestClient

from api import create_app, remove_port_file, write_port_file
from conftest import make_listing


@pytest.fixture
def app(orchestrator, pipeline, dedup, images):
    return create_app(orchestrator, pipeline, dedup, images, port=8765)


@pytest.fixture
def client(app):
    with TestClient(app) as client:
        yield client


def test_status(client):
    response = client.get("/status")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["status"]["stage"] == "running"
    assert body["status"]["active"] is True
    assert body["categoriesCount"] == 1


def test_port_and_categories(client):
    assert client.get("/port").json() == {"success": True, "port": 8765}
    assert client.get("/categories").json()["categories"][0]["name"] == "Vehicles"


def test_search(client, orchestrator):
    response = client.post("/search", json={"query": "sofa"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "query": "sofa"}
    assert orchestrator.filters.search_query == "sofa"


def test_invalid_filters_are_client_errors(client):
    cases = [
        ("/search", {"query": ""}),
        ("/search", {}),
        ("/select-category", {"category": "Boats"}),
        ("/set-location", {"city": "Austin", "radius": 20}),
        ("/set-price-filter", {"minPrice": 500, "maxPrice": 50}),
        ("/set-price-filter", {"minPrice": "cheap"}),
        ("/set-year-filter", {}),
        ("/set-age-filter", {"maxAgeMinutes": -5}),
        ("/set-age-filter", {"maxAgeMinutes": 0.5}),
    ]
    for path, payload in cases:
        response = client.post(path, json=payload)
        assert response.status_code == 400, path
        assert response.json()["success"] is False


def test_filter_that_does_not_apply_is_server_error(client, actions):
    actions.results["select_category"] = False

    response = client.post("/select-category", json={"category": "Vehicles"})

    assert response.status_code == 500
    assert response.json()["success"] is False


def test_location_and_price_filters(client, orchestrator):
    location = client.post("/set-location", json={
        "city": "Austin", "radius": 20, "latitude": 30.27, "longitude": -97.74,
    })
    price = client.post("/set-price-filter", json={"minPrice": 50})

    assert location.status_code == 200
    assert location.json()["applied"]["city"] == "Austin"
    assert price.json() == {"success": True, "applied": {"minPrice": 50, "maxPrice": None}}
    assert orchestrator.filters.radius_miles == 20
    assert orchestrator.filters.min_price == 50


def test_year_and_age_filters(client):
    year = client.post("/set-year-filter", json={"minYear": 2010, "maxYear": 0})
    age = client.post("/set-age-filter", json={"maxAgeMinutes": 45})

    assert year.json() == {"success": True, "applied": {"minYear": 2010, "maxYear": None}, "clientSide": True}
    assert age.json() == {"success": True, "applied": {"maxAgeMinutes": 45}}


def test_listings(client, extractor):
    extractor.batches = [[make_listing(1, title="2015 Honda Civic"), make_listing(2)]]
    extractor.batches[0][0].model_name = "Honda Civic"

    response = client.get("/listings", params={"count": 5})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert len(body["items"]) == 2
    first = body["items"][0]
    assert first["itemUrl"] == make_listing(1).url
    assert first["modelName"] == "Honda Civic"
    assert first["savedImagePath"]
    assert body["imageStats"]["downloaded"] == 2
    assert body["duplicatesRemoved"] == 0

    again = client.get("/listings", params={"count": 5}).json()
    assert again["items"] == []
    assert again["duplicatesRemoved"] == 2


def test_listings_count_out_of_range(client):
    assert client.get("/listings", params={"count": 0}).status_code == 400
    assert client.get("/listings", params={"count": 500}).status_code == 400


def test_clear_listing_cache_allows_resend(client, extractor):
    extractor.batches = [[make_listing(1)]]
    client.get("/listings")

    cleared = client.post("/clear-listing-cache", json={"sessions": True})
    again = client.get("/listings").json()

    assert cleared.json()["cleared"]["global"] == 1
    assert len(again["items"]) == 1


def test_clear_image_cache(client, extractor):
    extractor.batches = [[make_listing(1)]]
    client.get("/listings")

    response = client.post("/clear-image-cache")

    assert response.json()["entriesCleared"] == 1


def test_restart_browser(client, launcher):
    response = client.post("/restart-browser")

    assert response.status_code == 200
    assert response.json()["status"]["generation"] == 4
    assert launcher.launches == 2


def test_restart_browser_failure(client, launcher):
    launcher.fail = True

    response = client.post("/restart-browser")

    assert response.status_code == 500
    assert response.json()["success"] is False


def test_navigate_and_refresh(client, launcher):
    assert client.post("/navigate-to-marketplace").json() == {"success": True}
    assert client.post("/refresh-page").json() == {"success": True}
    assert launcher.pages[0].reloads == 1


def test_requests_rejected_until_browser_starts(orchestrator, pipeline, dedup, images):
    app = create_app(orchestrator, pipeline, dedup, images, start_background=False)

    with TestClient(app) as client:
        listings = client.get("/listings")
        search = client.post("/search", json={"query": "sofa"})

    assert listings.status_code == 400
    assert search.status_code == 400
    assert listings.json()["success"] is False


def test_port_file(tmp_path):
    path = tmp_path / "api_port.txt"

    write_port_file(8123, path)
    assert path.read_text() == "8123"

    remove_port_file(path)
    assert not path.exists()
    remove_port_file(path)
