import pytest

import site_cloner
from site_cloner import (
    CloneJob,
    InvalidInput,
    ParseFailure,
    PathTraversal,
    Settings,
    UrlToLocalMap,
    can_fetch_url,
    local_path_for_url,
    resolve_url,
    validate_url,
    write_text_atomic,
)


def test_resolve_url_handles_relative_forms():
    base = "http://example.com/blog/post.html"
    assert resolve_url("img/a.png", base) == "http://example.com/blog/img/a.png"
    assert resolve_url("/img/a.png", base) == "http://example.com/img/a.png"
    assert resolve_url("../a.png", base) == "http://example.com/a.png"
    assert resolve_url("//cdn.example.net/x.js", base) == "http://cdn.example.net/x.js"
    assert resolve_url("https://other.org/y.css", base) == "https://other.org/y.css"


def test_resolve_url_drops_fragment():
    assert (
        resolve_url("sprite.svg#icon", "http://example.com/")
        == "http://example.com/sprite.svg"
    )


def test_resolve_url_rejects_malformed_reference():
    with pytest.raises(ParseFailure):
        resolve_url("http://[::1/broken.png", "http://example.com/")
    with pytest.raises(ParseFailure):
        resolve_url("http://example.com:notaport/a.png", "http://example.com/")


@pytest.mark.parametrize(
    "ref",
    ["", "   ", "#top", "mailto:a@b.c", "javascript:void(0)", "data:image/png;base64,AA"],
)
def test_non_fetchable_references(ref):
    assert not can_fetch_url(ref)


def test_validate_url():
    assert validate_url(" https://example.com/x ") == "https://example.com/x"
    with pytest.raises(InvalidInput, match="No URL provided"):
        validate_url("")
    for bad in ("example.com", "ftp://example.com/", "http://", "http://[::1"):
        with pytest.raises(InvalidInput, match="Invalid URL"):
            validate_url(bad)


def test_local_path_replaces_illegal_characters(tmp_path):
    p = local_path_for_url('http://example.com/img/a:b*c|d"e<f>.png', tmp_path)
    assert p == tmp_path.resolve() / "img" / "a_b_c_d_e_f_.png"


def test_local_path_ignores_host_and_query(tmp_path):
    p = local_path_for_url("https://cdn.example.net/css/site.css?v=3", tmp_path)
    assert p == tmp_path.resolve() / "css" / "site.css"


def test_local_path_defaults_to_index_html(tmp_path):
    assert local_path_for_url("http://example.com", tmp_path).name == "index.html"
    assert (
        local_path_for_url("http://example.com/docs/", tmp_path)
        == tmp_path.resolve() / "docs" / "index.html"
    )


@pytest.mark.parametrize(
    "url",
    [
        "http://example.com/../../etc/passwd",
        "http://example.com/a/../../../x.png",
        "http://example.com/a/..",
    ],
)
def test_local_path_rejects_traversal(tmp_path, url):
    with pytest.raises(PathTraversal):
        local_path_for_url(url, tmp_path / "assets")


def test_local_paths_stay_under_root(tmp_path):
    root = tmp_path / "assets"
    urls = [
        "http://example.com/a/b/../c.png",
        "http://example.com/%2e%2e/%2e%2e/x",
        "http://example.com/..%5c..%5cwin.ini",
        "http://example.com//double//slash.js",
        "http://example.com/C:/windows/x.dll",
        "http://example.com/a\\..\\..\\b",
    ]
    for url in urls:
        try:
            p = local_path_for_url(url, root)
        except PathTraversal:
            continue
        assert p.is_relative_to(root.resolve()), url


def test_clone_job_directory_name(tmp_path):
    settings = Settings(output_base=str(tmp_path))
    job = CloneJob.create("https://www.Example.com:8443/page", settings, now_ms=1700)
    assert job.output_dir == tmp_path.resolve() / "www.example.com_1700"
    assert job.assets_dir == job.output_dir / "assets"


def test_url_map_is_write_once():
    m = UrlToLocalMap({"http://example.com/a.css": "assets/a.css"})
    m.set("http://example.com/a.css", "assets/a.css")
    with pytest.raises(ValueError):
        m.set("http://example.com/a.css", "assets/other.css")
    assert m.get("http://example.com/a.css") == "assets/a.css"
    assert len(m) == 1
    assert "http://example.com/missing" not in m


def test_local_path_decodes_percent_escapes(tmp_path):
    p = local_path_for_url("http://example.com/img/my%20pic.png", tmp_path)
    assert p == tmp_path.resolve() / "img" / "my pic.png"


def test_local_path_rejects_encoded_traversal(tmp_path):
    with pytest.raises(PathTraversal):
        local_path_for_url("http://example.com/%2e%2e/%2e%2e/x.png", tmp_path / "assets")


def test_local_path_neutralises_control_characters(tmp_path):
    p = local_path_for_url("http://example.com/a%00b.png", tmp_path)
    assert p.name == "a_b.png"


def test_atomic_write_leaves_no_temp_file(tmp_path, monkeypatch):
    target = tmp_path / "index.html"

    def fail_replace(src, dst):
        raise OSError("disk full")

    monkeypatch.setattr(site_cloner.os, "replace", fail_replace)
    with pytest.raises(OSError, match="disk full"):
        write_text_atomic(target, "<html></html>")
    assert list(tmp_path.iterdir()) == []
