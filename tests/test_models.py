from app.models import (
    CatalogRef,
    ClassifiedItem,
    DefaultSort,
    ListPatch,
    ListVisibility,
    SurfaceVisibility,
    UserListEntry,
)


def test_classified_item_from_metadata_builds_meta_preview():
    item = ClassifiedItem.from_metadata(
        {
            "id": "tt0903747",
            "imdb_id": "tt0903747",
            "name": "Breaking Bad",
            "poster": "https://images.example.com/bb.jpg",
            "releaseInfo": "2008–2013",
            "genres": ["Crime", "Drama"],
            "imdbRating": "9.5",
            "runtime": "49 min",
            "cast": [f"Actor {index}" for index in range(12)],
        },
        bucket="series",
        added_order=4,
        fallback_id="tt0903747",
    )

    preview = item.to_meta_preview()

    assert preview["id"] == "tt0903747"
    assert preview["type"] == "series"
    assert preview["year"] == 2008
    assert preview["imdbRating"] == 9.5
    assert preview["posterShape"] == "poster"
    assert len(preview["cast"]) == 8
    assert "logo" not in preview
    assert item.runtime_minutes == 49
    assert item.added_order == 4


def test_classified_item_uses_background_when_poster_missing():
    item = ClassifiedItem.from_metadata(
        {"id": "tt0000001", "name": "No Poster", "background": "https://img.example.com/bg.jpg"},
        bucket="movie",
        added_order=0,
        fallback_id="tt0000001",
    )

    assert item.poster == "https://img.example.com/bg.jpg"
    assert item.poster_shape == "landscape"


def test_classified_item_round_trips_through_snapshot_payload():
    item = ClassifiedItem(id="TT0000002", bucket="movie", name="Film", genres="Drama, War")

    restored = ClassifiedItem.model_validate(item.model_dump(mode="json"))

    assert restored == item
    assert restored.id == "tt0000002"
    assert restored.genres == ["Drama", "War"]


def test_user_list_entry_coerce_accepts_legacy_shapes():
    assert UserListEntry.coerce("ls0123456").id == "ls0123456"
    legacy = UserListEntry.coerce({"lsid": "LS0123456", "showIn": "home"})
    assert legacy.id == "ls0123456"
    assert legacy.show_in == "home"
    assert UserListEntry.coerce(42) is None
    assert UserListEntry.coerce({"name": "missing id"}) is None


def test_show_in_is_a_fallback_for_visibility():
    entry = UserListEntry(id="ls0123456", show_in="both")
    assert entry.visibility_for("movie") == SurfaceVisibility(discover=True, home=True)

    entry = UserListEntry(
        id="ls0123456",
        show_in="both",
        visibility=ListVisibility(series=SurfaceVisibility(discover=False)),
    )
    assert entry.visibility_for("series") == SurfaceVisibility(discover=False, home=True)
    assert entry.visibility_for("movie") == SurfaceVisibility(discover=True, home=True)


def test_default_visibility_is_discover_only():
    entry = UserListEntry(id="ls0123456")

    assert entry.visibility_for("movie") == SurfaceVisibility(discover=True, home=False)
    assert entry.display_name == "IMDb List ls0123456"


def test_list_patch_merges_visibility_and_sort():
    entry = UserListEntry(id="ls0123456", name="Old")
    patch = ListPatch.model_validate(
        {
            "name": "  New name ",
            "visibility": {"series": {"home": True}},
            "defaultSort": {"key": "imdb", "order": "reverse"},
        }
    )

    updated = patch.apply(entry)

    assert updated.name == "New name"
    assert updated.visibility_for("series") == SurfaceVisibility(discover=True, home=True)
    assert updated.visibility_for("movie") == SurfaceVisibility(discover=True, home=False)
    assert updated.default_sort == DefaultSort(key="rating", order="desc")


def test_catalog_ref_round_trip():
    ref = CatalogRef(uid="user-1", list_id="ls0123456", content_type="series")
    catalog_id = ref.to_catalog_id("imdb")

    assert catalog_id == "imdb-user-1-ls0123456-series"
    assert CatalogRef.parse(catalog_id, prefix="imdb") == ref
    assert CatalogRef.parse(catalog_id, prefix="other") is None
    assert CatalogRef.parse("imdb-user-ls0123456-shorts", prefix="imdb") is None
