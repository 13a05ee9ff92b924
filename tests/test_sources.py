"""Tests for IMDb page parsing and the cached TMDb export."""
import datetime as dt
import gzip
from pathlib import Path

import pytest

from cinegraph_jobs.sources import (
    DEFAULT_FESTIVAL_CATEGORY,
    ExportClient,
    export_file_name,
    normalize_category_name,
    parse_festival_page,
    parse_list_entries,
    parse_list_total,
    total_pages_for,
)
from cinegraph_jobs.transport import APIResponse, ErrorKind


LIST_HTML = """
<html><body>
  <div data-testid="list-page-mc-total-items"><ul><li class="ipc-inline-list__item">1,001 titles</li></ul></div>
  <ul>
    <li class="ipc-metadata-list-summary-item">
      <a href="/title/tt0017136/?ref_=ls_t_1"><h3 class="ipc-title__text">1. Metropolis</h3></a>
      <span class="dli-title-metadata-item">1927</span>
    </li>
    <li class="ipc-metadata-list-summary-item">
      <a href="/title/tt0017136/?ref_=ls_t_dup"><h3 class="ipc-title__text">1. Metropolis</h3></a>
    </li>
    <li class="ipc-metadata-list-summary-item">
      <a href="/title/tt0018455/"><h3 class="ipc-title__text">2. Sunrise</h3></a>
      <span>Sunrise: A Song of Two Humans (1927)</span>
    </li>
    <li class="ipc-metadata-list-summary-item"><span>No link here</span></li>
  </ul>
</body></html>
"""


class TestListPages:
    def test_total_items(self):
        assert parse_list_total(LIST_HTML) == 1001

    def test_total_missing(self):
        assert parse_list_total("<html><body><p>nothing</p></body></html>") is None

    def test_entries_are_deduplicated_and_positioned(self):
        entries = parse_list_entries(LIST_HTML, page=2, page_size=250)
        assert [e.imdb_id for e in entries] == ["tt0017136", "tt0018455"]
        assert entries[0].title == "Metropolis"
        assert entries[0].year == 1927
        assert entries[1].year == 1927
        assert entries[0].position == 251

    @pytest.mark.parametrize("total,size,pages", [(0, 250, 0), (1, 250, 1), (250, 250, 1), (251, 250, 2), (1001, 250, 5)])
    def test_total_pages_for(self, total, size, pages):
        assert total_pages_for(total, size) == pages


class TestFestivalPages:
    def test_html_fallback_collects_title_links(self):
        html = """
        <html><body>
          <a href="/title/tt0111161/">The Shawshank Redemption</a>
          <a href="/title/tt0111161/?ref_=x">The Shawshank Redemption</a>
          <a href="/title/tt0110912/">Pulp Fiction</a>
          <a href="/name/nm0000229/">Steven Spielberg</a>
        </body></html>
        """
        page = parse_festival_page(html)
        assert page.parser == "html"
        entries = page.awards[DEFAULT_FESTIVAL_CATEGORY]
        assert [e["films"][0]["imdb_id"] for e in entries] == ["tt0111161", "tt0110912"]
        assert page.nomination_count == 2

    def test_broken_next_data_falls_back(self):
        html = (
            '<html><script id="__NEXT_DATA__" type="application/json">{not json</script>'
            '<a href="/title/tt0000001/">Carmencita</a></html>'
        )
        assert parse_festival_page(html).parser == "html"

    def test_empty_page(self):
        page = parse_festival_page("<html><body></body></html>")
        assert page.parser == "empty"
        assert page.nomination_count == 0

    def test_category_names_are_normalized(self):
        assert normalize_category_name("Best Motion Picture  of the Year!") == "best motion picture of the year"


class TestExportClient:
    def client(self, config, **overrides):
        export = dict(config["export"], **overrides)
        return ExportClient(config=export)

    def write_export(self, config, day, lines):
        path = Path(config["export"]["cache_dir"])
        path.mkdir(parents=True, exist_ok=True)
        (path / export_file_name(day)).write_bytes(gzip.compress("\n".join(lines).encode("utf-8")))

    def test_file_name(self):
        assert export_file_name(dt.date(2026, 3, 7)) == "movie_ids_03_07_2026.json.gz"

    @pytest.mark.asyncio
    async def test_fetch_latest_reads_cached_export(self, config):
        day = dt.date(2026, 10, 18)
        self.write_export(
            config,
            day,
            ['{"id": 5, "original_title": "Five", "popularity": 1.5}', '{"id": 6, "adult": true}'],
        )
        result = await self.client(config).fetch_latest(today=day)
        assert result.ok
        assert result.value.export_date == "2026-10-18"
        assert [e.id for e in result.value.entries] == [5]
        assert result.value.skipped == 1

    @pytest.mark.asyncio
    async def test_load_cached_missing(self, config):
        result = await self.client(config).load_cached("2020-01-01")
        assert result.error.kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_load_cached_bad_date(self, config):
        result = await self.client(config).load_cached("yesterday")
        assert result.error.kind == ErrorKind.INVALID

    @pytest.mark.asyncio
    async def test_download_prunes_older_exports(self, config, monkeypatch):
        today = dt.date(2026, 10, 18)
        older = [dt.date(2026, 10, 16), dt.date(2026, 9, 30)]
        for day in older:
            self.write_export(config, day, ['{"id": 1, "popularity": 1.0}'])
        cache = Path(config["export"]["cache_dir"])
        (cache / "notes.txt").write_text("keep")

        client = self.client(config)
        body = gzip.compress(b'{"id": 9, "original_title": "Nine", "popularity": 3.0}')
        urls = []

        async def fake_request(**kwargs):
            urls.append(kwargs["url"])
            return APIResponse(status=200, headers={}, data=None, text="", content=body)

        monkeypatch.setattr(client.http, "request_json", fake_request)
        result = await client.fetch_latest(today=today)

        assert result.ok
        assert [e.id for e in result.value.entries] == [9]
        assert len(urls) == 1
        assert sorted(p.name for p in cache.iterdir()) == ["movie_ids_10_18_2026.json.gz", "notes.txt"]
