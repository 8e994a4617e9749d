from __future__ import annotations

from pathlib import Path

import pytest

from webp_converter.rewriter import ReferenceRewriter


@pytest.fixture
def uploads(tmp_path: Path) -> Path:
    root = tmp_path / "up"
    (root / "2024").mkdir(parents=True)
    (root / "2024" / "a.webp").write_bytes(b"RIFF")
    (root / "2024" / "a-300x200.webp").write_bytes(b"RIFF")
    return root


@pytest.fixture
def rewriter(uploads: Path) -> ReferenceRewriter:
    return ReferenceRewriter("http://site/up", uploads)


def test_src_rewritten_when_webp_exists(rewriter: ReferenceRewriter) -> None:
    html = '<img src="http://site/up/2024/a.jpg">'

    assert rewriter.rewrite(html) == '<img src="http://site/up/2024/a.webp">'


def test_unchanged_when_webp_missing(rewriter: ReferenceRewriter, uploads: Path) -> None:
    (uploads / "2024" / "a.webp").unlink()
    html = '<img src="http://site/up/2024/a.jpg">'

    assert rewriter.rewrite(html) == html


def test_protocol_agnostic_match(rewriter: ReferenceRewriter) -> None:
    html = "<img src='https://site/up/2024/a.PNG'><img src=\"//site/up/2024/a.jpeg\">"

    assert rewriter.rewrite(html) == "<img src='https://site/up/2024/a.webp'><img src=\"//site/up/2024/a.webp\">"


def test_root_relative_paths(rewriter: ReferenceRewriter) -> None:
    assert rewriter.rewrite('<img src="/up/2024/a.jpg">') == '<img src="/up/2024/a.webp">'


def test_srcset_rewritten_element_by_element(rewriter: ReferenceRewriter) -> None:
    html = (
        '<img srcset="http://site/up/2024/a.jpg 1024w, '
        'http://site/up/2024/missing.jpg 600w,http://site/up/2024/a-300x200.jpg 300w">'
    )

    assert rewriter.rewrite(html) == (
        '<img srcset="http://site/up/2024/a.webp 1024w, '
        'http://site/up/2024/missing.jpg 600w,http://site/up/2024/a-300x200.webp 300w">'
    )


def test_other_hosts_left_alone(rewriter: ReferenceRewriter) -> None:
    html = '<img src="http://cdn.example/up/2024/a.jpg">'

    assert rewriter.rewrite(html) == html


def test_paths_outside_uploads_are_never_resolved(rewriter: ReferenceRewriter, tmp_path: Path) -> None:
    (tmp_path / "secret.webp").write_bytes(b"RIFF")
    html = '<img src="http://site/up/../secret.jpg">'

    assert rewriter.rewrite(html) == html


def test_only_url_attributes_are_touched(rewriter: ReferenceRewriter) -> None:
    html = '<img alt="http://site/up/2024/a.jpg" data-src="http://site/up/2024/a.jpg">'

    assert rewriter.rewrite(html) == '<img alt="http://site/up/2024/a.jpg" data-src="http://site/up/2024/a.webp">'


def test_rewrite_content_handles_bare_urls(rewriter: ReferenceRewriter) -> None:
    text = "Look: http://site/up/2024/a.jpg and style=\"background:url(http://site/up/2024/b.jpg)\""

    assert rewriter.rewrite_content(text) == (
        "Look: http://site/up/2024/a.webp and style=\"background:url(http://site/up/2024/b.jpg)\""
    )


def test_rewrite_content_matches_whole_url(rewriter: ReferenceRewriter) -> None:
    text = "http://site/up/2024/a.jpg/x.png http://site/up/2024/a.jpg-1.jpg http://site/up/2024/a.jpg?v=1"

    assert rewriter.rewrite_content(text) == text


def test_rewrite_content_ignores_trailing_punctuation(rewriter: ReferenceRewriter) -> None:
    text = "See http://site/up/2024/a.jpg. Or http://site/up/2024/a-300x200.png, maybe."

    assert rewriter.rewrite_content(text) == (
        "See http://site/up/2024/a.webp. Or http://site/up/2024/a-300x200.webp, maybe."
    )


def test_rewrite_url_single(rewriter: ReferenceRewriter) -> None:
    assert rewriter.rewrite_url("http://site/up/2024/a.jpg") == "http://site/up/2024/a.webp"
    assert rewriter.rewrite_url("http://site/up/2024/a.jpg?ver=2") == "http://site/up/2024/a.jpg?ver=2"
    assert rewriter.rewrite_url("") == ""


def test_https_base_url_matches_http_references(uploads: Path) -> None:
    rewriter = ReferenceRewriter("https://site/up/", uploads)

    assert rewriter.rewrite_url("http://site/up/2024/a.jpg") == "http://site/up/2024/a.webp"
