from app.models import CatalogItem, ImageConfig, SearchPage


def test_movie_payload_normalised():
    item = CatalogItem.from_tmdb(
        {
            "id": 550,
            "title": "Бойцовский клуб",
            "release_date": "1999-10-15",
            "poster_path": "/fight.jpg",
            "overview": "",
            "vote_average": 8,
            "runtime": 139,
            "genres": [{"id": 18, "name": "Драма"}, {"id": 53, "name": "Триллер"}],
        },
        "movie",
    )

    assert item.title == "Бойцовский клуб"
    assert item.release_date == "1999-10-15"
    assert item.overview is None
    assert item.vote_average == 8.0
    assert item.runtime == 139
    assert item.genre_summary == "Драма, Триллер"


def test_series_payload_uses_name_and_first_air_date():
    item = CatalogItem.from_tmdb(
        {
            "id": 1399,
            "name": "Игра престолов",
            "first_air_date": "2011-04-17",
            "episode_run_time": [60],
            "genres": [],
        },
        "tv",
    )

    assert item.media_type == "tv"
    assert item.title == "Игра престолов"
    assert item.release_date == "2011-04-17"
    assert item.runtime is None
    assert item.genre_summary is None


def test_zero_runtime_treated_as_missing():
    item = CatalogItem.from_tmdb({"id": 1, "title": "Short", "runtime": 0}, "movie")

    assert item.runtime is None


def test_search_page_drops_people_and_unknown_kinds():
    page = SearchPage.from_tmdb(
        {
            "page": 2,
            "total_pages": 3,
            "total_results": 41,
            "results": [
                {"id": 1, "media_type": "movie", "title": "Matrix"},
                {"id": 2, "media_type": "person", "name": "Keanu Reeves"},
                {"id": 3, "media_type": "tv", "name": "Westworld"},
                {"media_type": "movie", "title": "No id"},
            ],
        }
    )

    assert page.page == 2
    assert [(item.id, item.media_type, item.title) for item in page.results] == [
        (1, "movie", "Matrix"),
        (3, "tv", "Westworld"),
    ]
    assert page.total_pages == 3
    assert page.total_results == 41


def test_image_config_prefers_secure_base_url():
    config = ImageConfig.from_tmdb(
        {
            "images": {
                "base_url": "http://image.tmdb.org/t/p/",
                "secure_base_url": "https://image.tmdb.org/t/p/",
                "poster_sizes": ["w92", "w500"],
            }
        }
    )

    assert config.base_url == "https://image.tmdb.org/t/p/"
    assert config.poster_url("/a.jpg", "w500") == "https://image.tmdb.org/t/p/w500/a.jpg"
    assert config.poster_url(None, "w500") is None
    assert config.poster_url("https://cdn.example/a.jpg", "w500") == "https://cdn.example/a.jpg"
