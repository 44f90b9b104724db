import itertools

import pytest

import page_snapshot
from page_snapshot import (
    IMAGE,
    SCRIPT,
    STYLESHEET,
    AssetDownloadError,
    AssetReference,
    ExtractedAssets,
    asset_filename,
    asset_relative_path,
    download_assets,
    fetch_asset,
    plan_targets,
    unique_references,
)

from conftest import FakeResponse, FakeSession


def images(*refs):
    assets = ExtractedAssets()
    for url, original in refs:
        assets.add(AssetReference(url, original, IMAGE))
    return assets


def test_literals_sharing_a_url_map_to_the_same_path(tmp_path):
    assets = images(
        ("https://example.com/img/logo.png", "/img/logo.png"),
        ("https://example.com/img/logo.png", "https://example.com/img/logo.png"),
        ("https://example.com/img/logo.png", "../img/logo.png"),
    )
    session = FakeSession({"https://example.com/img/logo.png": b"PNGDATA"})
    report = download_assets(assets, tmp_path, session, workers=2)

    assert report.total == 1
    assert report.downloaded == 1
    assert session.calls == ["https://example.com/img/logo.png"]
    paths = {
        report.mapping[k]
        for k in ("/img/logo.png", "https://example.com/img/logo.png", "../img/logo.png")
    }
    assert len(paths) == 1
    path = paths.pop()
    assert path.startswith("assets/images/logo-")
    assert (tmp_path / path).read_bytes() == b"PNGDATA"


def test_first_category_wins_for_duplicates(tmp_path):
    assets = ExtractedAssets()
    url = "https://fonts.example.com/css?family=Inter"
    assets.add(AssetReference(url, url, STYLESHEET))
    assets.add(AssetReference(url, url, "font"))
    session = FakeSession({url: b"@font-face{}"})
    report = download_assets(assets, tmp_path, session)
    assert report.total == 1
    assert report.records[0].category == STYLESHEET
    assert report.mapping[url].startswith("assets/stylesheets/css-")
    assert report.mapping[url].endswith(".css")


def test_one_missing_image_is_counted_and_does_not_abort(tmp_path):
    assets = images(
        ("https://example.com/a.png", "a.png"),
        ("https://example.com/b.png", "b.png"),
        ("https://example.com/missing.png", "missing.png"),
    )
    session = FakeSession(
        {
            "https://example.com/a.png": b"A",
            "https://example.com/b.png": b"BB",
        }
    )
    report = download_assets(assets, tmp_path, session, workers=3)

    assert (report.total, report.downloaded, report.failed) == (3, 2, 1)
    assert report.failures[0].url == "https://example.com/missing.png"
    assert "404" in report.failures[0].error
    assert "missing.png" not in report.mapping
    assert set(report.mapping) == {
        "https://example.com/a.png",
        "a.png",
        "https://example.com/b.png",
        "b.png",
    }


def test_network_errors_become_failures(tmp_path, connection_error):
    assets = images(("https://down.example.com/x.png", "x.png"))
    session = FakeSession({"https://down.example.com/x.png": connection_error})
    report = download_assets(assets, tmp_path, session)
    assert report.failed == 1
    assert report.mapping == {}
    assert not (tmp_path / "assets").exists()


def test_rerun_reuses_files_without_fetching(tmp_path):
    assets = images(
        ("https://example.com/a.png", "a.png"),
        ("https://example.com/b.png", "b.png"),
    )
    first = download_assets(
        assets,
        tmp_path,
        FakeSession({"https://example.com/a.png": b"A", "https://example.com/b.png": b"B"}),
    )
    offline = FakeSession()
    known = {r.local_path: r.url for r in first.records}
    second = download_assets(assets, tmp_path, offline, known=known)

    assert offline.calls == []
    assert second.downloaded == 2
    assert second.failed == 0
    assert [r.size for r in second.records] == [0, 0]
    assert second.mapping == first.mapping


def test_no_partial_files_left_after_failed_stream(tmp_path):
    class BrokenStream(FakeResponse):
        def iter_content(self, chunk_size=1):
            yield b"abc"
            raise page_snapshot.requests.ConnectionError("reset by peer")

    url = "https://example.com/app.js"
    assets = ExtractedAssets()
    assets.add(AssetReference(url, "/app.js", SCRIPT))
    report = download_assets(assets, tmp_path, FakeSession({url: BrokenStream(200)}))

    assert report.failed == 1
    assert not (tmp_path / "assets" / "scripts").exists()


def test_fetch_asset_enforces_total_deadline(monkeypatch):
    ticks = itertools.chain([0.0], itertools.repeat(100.0))
    monkeypatch.setattr(page_snapshot.time, "monotonic", lambda: next(ticks))
    url = "https://slow.example.com/big.bin"
    session = FakeSession({url: FakeResponse(200, b"0123456789", chunk_size=2)})
    with pytest.raises(AssetDownloadError, match="timed out"):
        fetch_asset(session, url, "ua", timeout=15)


def test_fetch_asset_rejects_non_2xx():
    url = "https://example.com/gone.css"
    session = FakeSession({url: FakeResponse(410, reason="Gone")})
    with pytest.raises(AssetDownloadError, match="HTTP 410: Gone"):
        fetch_asset(session, url, "ua", timeout=1)


def test_asset_filename_shape():
    name = asset_filename("https://example.com/static/my logo@2x.png", IMAGE)
    base, rest = name.rsplit("-", 1)
    assert base == "my_logo_2x"
    digest, ext = rest.split(".")
    assert len(digest) == 8
    assert ext == "png"


def test_asset_filename_default_extensions():
    assert asset_filename("https://example.com/styles", STYLESHEET).endswith(".css")
    assert asset_filename("https://example.com/bundle", SCRIPT).endswith(".js")
    assert asset_filename("https://example.com/face", "font").endswith(".woff2")
    assert asset_filename("https://example.com/", IMAGE).startswith("asset-")
    assert asset_filename("https://example.com/", IMAGE).endswith(".jpg")


def test_distinct_urls_never_share_a_filename():
    urls = [
        "https://a.example.com/img/logo.png",
        "https://b.example.com/img/logo.png",
        "https://a.example.com/other/logo.png",
        "https://a.example.com/img/logo.png?v=2",
        "http://a.example.com/img/logo.png",
    ]
    names = {asset_filename(u, IMAGE) for u in urls}
    assert len(names) == len(urls)
    # stable across runs
    assert asset_filename(urls[0], IMAGE) == asset_filename(urls[0], IMAGE)


def test_plan_targets_widens_hash_on_clash(monkeypatch):
    def clashing(url, category, digits=8):
        if digits == 8:
            return "logo-00000000.png"
        return f"logo-{'f' * 31}{len(url) % 10}.png"

    monkeypatch.setattr(page_snapshot, "asset_filename", clashing)
    refs = [
        AssetReference("https://a.example.com/logo.png", "x", IMAGE),
        AssetReference("https://bb.example.com/logo.png", "y", IMAGE),
    ]
    targets = plan_targets(refs)
    assert targets[refs[0].url] == "assets/images/logo-00000000.png"
    assert targets[refs[1].url] != targets[refs[0].url]


def test_unique_references_preserves_order_and_all_literals():
    refs = [
        AssetReference("https://e.com/a.png", "a.png", IMAGE),
        AssetReference("https://e.com/b.png", "b.png", IMAGE),
        AssetReference("https://e.com/a.png", "/a.png", IMAGE),
        AssetReference("https://e.com/a.png", "a.png", IMAGE),
    ]
    unique = unique_references(refs)
    assert [r.url for r, _ in unique] == ["https://e.com/a.png", "https://e.com/b.png"]
    assert unique[0][1] == ["a.png", "/a.png"]


def test_unrecorded_file_on_disk_is_fetched_again(tmp_path):
    url = "https://example.com/a.png"
    rel = asset_relative_path(IMAGE, asset_filename(url, IMAGE))
    stale = tmp_path / rel
    stale.parent.mkdir(parents=True)
    stale.write_bytes(b"someone else's bytes")

    report = download_assets(images((url, "a.png")), tmp_path, FakeSession({url: b"A"}))

    assert report.mapping[url] == rel
    assert report.records[0].size == 1
    assert stale.read_bytes() == b"A"


def test_path_recorded_for_another_url_is_not_reused(tmp_path):
    url = "https://example.com/a.png"
    rel = asset_relative_path(IMAGE, asset_filename(url, IMAGE))
    held = tmp_path / rel
    held.parent.mkdir(parents=True)
    held.write_bytes(b"OTHER")
    known = {rel: "https://elsewhere.example.org/a.png"}

    report = download_assets(
        images((url, "a.png")), tmp_path, FakeSession({url: b"A"}), known=known
    )

    new_rel = report.mapping[url]
    assert new_rel != rel
    assert new_rel == asset_relative_path(IMAGE, asset_filename(url, IMAGE, digits=32))
    assert (tmp_path / new_rel).read_bytes() == b"A"
    assert held.read_bytes() == b"OTHER"
