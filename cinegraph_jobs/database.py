from __future__ import annotations

import json
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .common import LOGGER, compact_json, load_json_object, now_epoch, parse_float, parse_int, parse_year


class LocalDatabase:
    def __init__(self, path: Path):
        self.path = path
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(path))
        self.conn.row_factory = sqlite3.Row
        self._init_schema()

    def close(self) -> None:
        self.conn.close()

    def _init_schema(self) -> None:
        with self.conn:
            self.conn.execute("PRAGMA journal_mode=WAL")
            self.conn.execute("PRAGMA synchronous=NORMAL")

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS movies (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tmdb_id INTEGER UNIQUE,
                    imdb_id TEXT UNIQUE,
                    title TEXT NOT NULL,
                    original_title TEXT,
                    release_date TEXT,
                    release_year INTEGER,
                    popularity REAL,
                    vote_count INTEGER,
                    vote_average REAL,
                    poster_path TEXT,
                    runtime INTEGER,
                    import_status TEXT NOT NULL DEFAULT 'full',
                    failed_criteria TEXT,
                    tmdb_data TEXT,
                    omdb_data TEXT,
                    canonical_sources TEXT NOT NULL DEFAULT '{}',
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS people (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    tmdb_id INTEGER UNIQUE,
                    imdb_id TEXT UNIQUE,
                    name TEXT NOT NULL,
                    known_for_department TEXT,
                    popularity REAL,
                    profile_path TEXT,
                    tmdb_data TEXT,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS credits (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    movie_id INTEGER NOT NULL,
                    person_id INTEGER NOT NULL,
                    credit_type TEXT NOT NULL,
                    department TEXT,
                    job TEXT NOT NULL DEFAULT '',
                    character TEXT NOT NULL DEFAULT '',
                    cast_order INTEGER,
                    UNIQUE (movie_id, person_id, credit_type, job, character)
                )
                """
            )

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS genres (
                    id INTEGER PRIMARY KEY,
                    name TEXT NOT NULL
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS movie_genres (
                    movie_id INTEGER NOT NULL,
                    genre_id INTEGER NOT NULL,
                    PRIMARY KEY (movie_id, genre_id)
                )
                """
            )

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS collaborations (
                    person_a_id INTEGER NOT NULL,
                    person_b_id INTEGER NOT NULL,
                    movie_count INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    PRIMARY KEY (person_a_id, person_b_id)
                )
                """
            )

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS movie_lists (
                    source_key TEXT PRIMARY KEY,
                    list_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    last_import_status TEXT,
                    last_import_at INTEGER,
                    total_imports INTEGER NOT NULL DEFAULT 0,
                    expected_movie_count INTEGER,
                    last_movie_count INTEGER,
                    updated_at INTEGER NOT NULL
                )
                """
            )

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS festival_organizations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    key TEXT NOT NULL UNIQUE,
                    name TEXT NOT NULL,
                    abbreviation TEXT NOT NULL,
                    imdb_event_id TEXT,
                    country TEXT,
                    founded_year INTEGER
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS festival_ceremonies (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    organization_id INTEGER NOT NULL,
                    year INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    data TEXT,
                    data_source TEXT,
                    source_url TEXT,
                    import_status TEXT NOT NULL DEFAULT 'pending',
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    UNIQUE (organization_id, year)
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS festival_categories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    organization_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    category_type TEXT NOT NULL,
                    tracks_person INTEGER NOT NULL DEFAULT 0,
                    UNIQUE (organization_id, name)
                )
                """
            )
            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS festival_nominations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ceremony_id INTEGER NOT NULL,
                    category_id INTEGER NOT NULL,
                    movie_id INTEGER,
                    movie_imdb_id TEXT,
                    movie_title TEXT,
                    person_id INTEGER,
                    person_imdb_ids TEXT NOT NULL DEFAULT '[]',
                    person_name TEXT,
                    won INTEGER NOT NULL DEFAULT 0,
                    details TEXT NOT NULL DEFAULT '{}',
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS lookup_failures (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    target TEXT NOT NULL,
                    error_kind TEXT NOT NULL,
                    metadata TEXT NOT NULL DEFAULT '{}',
                    created_at INTEGER NOT NULL
                )
                """
            )

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )

            self.conn.execute(
                """
                CREATE TABLE IF NOT EXISTS service_state (
                    service TEXT PRIMARY KEY,
                    paused_until INTEGER DEFAULT 0,
                    pause_reason TEXT,
                    rate_limit INTEGER,
                    rate_remaining INTEGER,
                    rate_reset INTEGER,
                    last_status INTEGER,
                    updated_at INTEGER
                )
                """
            )

            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_movies_release_year ON movies (release_year)"
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_credits_movie ON credits (movie_id)"
            )
            self.conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_credits_person ON credits (person_id)"
            )
            self.conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_nominations_ceremony_category
                ON festival_nominations (ceremony_id, category_id)
                """
            )
            self.conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_nominations_pending_imdb
                ON festival_nominations (movie_imdb_id)
                WHERE movie_id IS NULL
                """
            )

            self._ensure_column("movies", "runtime", "INTEGER")
            self._ensure_column("festival_nominations", "person_name", "TEXT")

    def _ensure_column(self, table_name: str, column_name: str, column_type: str) -> None:
        columns = self.conn.execute(f"PRAGMA table_info({table_name})").fetchall()
        existing = {str(row["name"]) for row in columns}
        if column_name in existing:
            return
        self.conn.execute(
            f"ALTER TABLE {table_name} ADD COLUMN {column_name} {column_type}"
        )

    # -- service pause state ------------------------------------------------

    def get_service_state(self, service: str) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM service_state WHERE service = ?", (service,)
        ).fetchone()

    def list_service_states(self) -> List[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM service_state ORDER BY service"
        ).fetchall()

    def update_service_state(
        self,
        service: str,
        paused_until: Optional[int] = None,
        pause_reason: Optional[str] = None,
        rate_limit: Optional[int] = None,
        rate_remaining: Optional[int] = None,
        rate_reset: Optional[int] = None,
        last_status: Optional[int] = None,
    ) -> None:
        now_ts = now_epoch()
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO service_state(
                    service,
                    paused_until,
                    pause_reason,
                    rate_limit,
                    rate_remaining,
                    rate_reset,
                    last_status,
                    updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(service) DO UPDATE SET
                    paused_until=COALESCE(excluded.paused_until, service_state.paused_until),
                    pause_reason=COALESCE(excluded.pause_reason, service_state.pause_reason),
                    rate_limit=COALESCE(excluded.rate_limit, service_state.rate_limit),
                    rate_remaining=COALESCE(excluded.rate_remaining, service_state.rate_remaining),
                    rate_reset=COALESCE(excluded.rate_reset, service_state.rate_reset),
                    last_status=COALESCE(excluded.last_status, service_state.last_status),
                    updated_at=excluded.updated_at
                """,
                (
                    service,
                    paused_until,
                    pause_reason,
                    rate_limit,
                    rate_remaining,
                    rate_reset,
                    last_status,
                    now_ts,
                ),
            )

    # -- movies -------------------------------------------------------------

    def get_movie(self, movie_id: int) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM movies WHERE id = ?", (movie_id,)
        ).fetchone()

    def get_movie_by_tmdb_id(self, tmdb_id: int) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM movies WHERE tmdb_id = ?", (tmdb_id,)
        ).fetchone()

    def get_movie_by_imdb_id(self, imdb_id: str) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM movies WHERE imdb_id = ?", (imdb_id,)
        ).fetchone()

    def count_movies(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) AS c FROM movies").fetchone()
        return int(row["c"] or 0)

    def count_movies_for_year(self, year: int) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) AS c FROM movies WHERE release_year = ?", (year,)
        ).fetchone()
        return int(row["c"] or 0)

    def known_tmdb_ids(self) -> Set[int]:
        rows = self.conn.execute(
            "SELECT tmdb_id FROM movies WHERE tmdb_id IS NOT NULL"
        ).fetchall()
        return {int(row["tmdb_id"]) for row in rows}

    def existing_tmdb_ids(self, tmdb_ids: Iterable[int]) -> Set[int]:
        found: Set[int] = set()
        ids = list(tmdb_ids)
        for start in range(0, len(ids), 500):
            batch = ids[start : start + 500]
            placeholders = ",".join("?" for _ in batch)
            rows = self.conn.execute(
                f"SELECT tmdb_id FROM movies WHERE tmdb_id IN ({placeholders})",
                tuple(batch),
            ).fetchall()
            found.update(int(row["tmdb_id"]) for row in rows)
        return found

    def _imdb_id_owner(self, imdb_id: Optional[str]) -> Optional[int]:
        if not imdb_id:
            return None
        row = self.conn.execute(
            "SELECT tmdb_id FROM movies WHERE imdb_id = ?", (imdb_id,)
        ).fetchone()
        if row is None:
            return None
        return parse_int(row["tmdb_id"])

    def upsert_movie(
        self,
        details: Dict[str, Any],
        *,
        import_status: str,
        failed_criteria: Optional[List[str]] = None,
        keep_payload: bool = True,
    ) -> int:
        """Insert or refresh a movie from a TMDb details payload; returns the local id."""
        tmdb_id = int(details["id"])
        now_ts = now_epoch()
        imdb_id = details.get("imdb_id") or (details.get("external_ids") or {}).get("imdb_id")
        owner = self._imdb_id_owner(imdb_id)
        if owner is not None and owner != tmdb_id:
            LOGGER.warning(
                "[Store] imdb_id %s already belongs to tmdb_id=%s; storing tmdb_id=%s without it",
                imdb_id,
                owner,
                tmdb_id,
            )
            imdb_id = None

        release_date = details.get("release_date") or None
        payload = compact_json(details) if keep_payload else None
        criteria = json.dumps(failed_criteria) if failed_criteria else None
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO movies(
                    tmdb_id,
                    imdb_id,
                    title,
                    original_title,
                    release_date,
                    release_year,
                    popularity,
                    vote_count,
                    vote_average,
                    poster_path,
                    runtime,
                    import_status,
                    failed_criteria,
                    tmdb_data,
                    created_at,
                    updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(tmdb_id) DO UPDATE SET
                    imdb_id=COALESCE(excluded.imdb_id, movies.imdb_id),
                    title=excluded.title,
                    original_title=excluded.original_title,
                    release_date=excluded.release_date,
                    release_year=excluded.release_year,
                    popularity=excluded.popularity,
                    vote_count=excluded.vote_count,
                    vote_average=excluded.vote_average,
                    poster_path=excluded.poster_path,
                    runtime=excluded.runtime,
                    import_status=excluded.import_status,
                    failed_criteria=excluded.failed_criteria,
                    tmdb_data=COALESCE(excluded.tmdb_data, movies.tmdb_data),
                    updated_at=excluded.updated_at
                """,
                (
                    tmdb_id,
                    imdb_id,
                    str(details.get("title") or details.get("original_title") or f"TMDb {tmdb_id}"),
                    details.get("original_title"),
                    release_date,
                    parse_year(release_date),
                    parse_float(details.get("popularity")),
                    parse_int(details.get("vote_count")),
                    parse_float(details.get("vote_average")),
                    details.get("poster_path"),
                    parse_int(details.get("runtime")),
                    import_status,
                    criteria,
                    payload,
                    now_ts,
                    now_ts,
                ),
            )
        row = self.get_movie_by_tmdb_id(tmdb_id)
        return int(row["id"])

    def set_movie_genres(self, movie_id: int, genres: List[Dict[str, Any]]) -> int:
        linked = 0
        with self.conn:
            for genre in genres:
                genre_id = parse_int(genre.get("id"))
                if genre_id is None:
                    continue
                self.conn.execute(
                    """
                    INSERT INTO genres(id, name) VALUES(?, ?)
                    ON CONFLICT(id) DO UPDATE SET name=excluded.name
                    """,
                    (genre_id, str(genre.get("name") or "")),
                )
                cursor = self.conn.execute(
                    "INSERT OR IGNORE INTO movie_genres(movie_id, genre_id) VALUES (?, ?)",
                    (movie_id, genre_id),
                )
                linked += cursor.rowcount
        return linked

    def set_omdb_data(self, movie_id: int, data: Dict[str, Any]) -> None:
        with self.conn:
            self.conn.execute(
                "UPDATE movies SET omdb_data = ?, updated_at = ? WHERE id = ?",
                (compact_json(data), now_epoch(), movie_id),
            )

    def set_movie_imdb_id(self, movie_id: int, imdb_id: str) -> bool:
        owner = self._imdb_id_owner(imdb_id)
        if owner is not None:
            return False
        with self.conn:
            self.conn.execute(
                "UPDATE movies SET imdb_id = ?, updated_at = ? WHERE id = ? AND imdb_id IS NULL",
                (imdb_id, now_epoch(), movie_id),
            )
        return True

    def canonical_sources(self, movie_id: int) -> Dict[str, Any]:
        row = self.conn.execute(
            "SELECT canonical_sources FROM movies WHERE id = ?", (movie_id,)
        ).fetchone()
        if row is None:
            return {}
        return load_json_object(row["canonical_sources"])

    def mark_canonical(self, movie_id: int, source_key: str, source_data: Dict[str, Any]) -> bool:
        """Merge one list membership into the movie's canonical_sources map.

        Read and write happen inside one IMMEDIATE transaction so concurrent
        marks for different lists on the same movie do not drop each other.
        """
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            row = self.conn.execute(
                "SELECT canonical_sources FROM movies WHERE id = ?", (movie_id,)
            ).fetchone()
            if row is None:
                self.conn.rollback()
                return False
            sources = load_json_object(row["canonical_sources"])
            merged = dict(sources.get(source_key) or {})
            merged.update(source_data)
            sources[source_key] = merged
            self.conn.execute(
                "UPDATE movies SET canonical_sources = ?, updated_at = ? WHERE id = ?",
                (compact_json(sources), now_epoch(), movie_id),
            )
            self.conn.commit()
        except sqlite3.Error:
            self.conn.rollback()
            raise
        return True

    def count_canonical(self, source_key: str) -> int:
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS c FROM movies
            WHERE json_extract(canonical_sources, '$."' || ? || '"') IS NOT NULL
            """,
            (source_key,),
        ).fetchone()
        return int(row["c"] or 0)

    def search_movies_by_title(self, term: str, limit: int = 25) -> List[sqlite3.Row]:
        pattern = f"%{term.strip()}%"
        return self.conn.execute(
            """
            SELECT id, tmdb_id, imdb_id, title, original_title, release_year, vote_count
            FROM movies
            WHERE title LIKE ? OR original_title LIKE ?
            ORDER BY COALESCE(vote_count, 0) DESC, id ASC
            LIMIT ?
            """,
            (pattern, pattern, int(limit)),
        ).fetchall()

    # -- people and credits ---------------------------------------------------

    def get_person(self, person_id: int) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM people WHERE id = ?", (person_id,)
        ).fetchone()

    def get_person_by_tmdb_id(self, tmdb_id: int) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM people WHERE tmdb_id = ?", (tmdb_id,)
        ).fetchone()

    def get_person_by_imdb_id(self, imdb_id: str) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM people WHERE imdb_id = ?", (imdb_id,)
        ).fetchone()

    def upsert_person(self, person: Dict[str, Any], *, keep_payload: bool = False) -> int:
        tmdb_id = int(person["id"])
        now_ts = now_epoch()
        imdb_id = person.get("imdb_id") or None
        if imdb_id:
            owner = self.get_person_by_imdb_id(imdb_id)
            if owner is not None and parse_int(owner["tmdb_id"]) not in (None, tmdb_id):
                imdb_id = None
            elif owner is not None and owner["tmdb_id"] is None:
                # Minimal placeholder created from a nomination; adopt it.
                with self.conn:
                    self.conn.execute(
                        "UPDATE people SET tmdb_id = ? WHERE id = ?",
                        (tmdb_id, owner["id"]),
                    )
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO people(
                    tmdb_id,
                    imdb_id,
                    name,
                    known_for_department,
                    popularity,
                    profile_path,
                    tmdb_data,
                    created_at,
                    updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(tmdb_id) DO UPDATE SET
                    imdb_id=COALESCE(excluded.imdb_id, people.imdb_id),
                    name=excluded.name,
                    known_for_department=COALESCE(excluded.known_for_department, people.known_for_department),
                    popularity=COALESCE(excluded.popularity, people.popularity),
                    profile_path=COALESCE(excluded.profile_path, people.profile_path),
                    tmdb_data=COALESCE(excluded.tmdb_data, people.tmdb_data),
                    updated_at=excluded.updated_at
                """,
                (
                    tmdb_id,
                    imdb_id,
                    str(person.get("name") or f"TMDb person {tmdb_id}"),
                    person.get("known_for_department"),
                    parse_float(person.get("popularity")),
                    person.get("profile_path"),
                    compact_json(person) if keep_payload else None,
                    now_ts,
                    now_ts,
                ),
            )
        row = self.get_person_by_tmdb_id(tmdb_id)
        return int(row["id"])

    def create_minimal_person(self, name: str, imdb_id: Optional[str]) -> int:
        if imdb_id:
            existing = self.get_person_by_imdb_id(imdb_id)
            if existing is not None:
                return int(existing["id"])
        now_ts = now_epoch()
        with self.conn:
            cursor = self.conn.execute(
                """
                INSERT INTO people(imdb_id, name, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (imdb_id, name, now_ts, now_ts),
            )
        return int(cursor.lastrowid)

    def add_credit(
        self,
        *,
        movie_id: int,
        person_id: int,
        credit_type: str,
        department: Optional[str],
        job: Optional[str],
        character: Optional[str],
        cast_order: Optional[int],
    ) -> bool:
        with self.conn:
            cursor = self.conn.execute(
                """
                INSERT OR IGNORE INTO credits(
                    movie_id, person_id, credit_type, department, job, character, cast_order
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    movie_id,
                    person_id,
                    credit_type,
                    department,
                    job or "",
                    character or "",
                    cast_order,
                ),
            )
        return cursor.rowcount > 0

    def movie_people(self, movie_id: int) -> List[sqlite3.Row]:
        return self.conn.execute(
            """
            SELECT DISTINCT p.id, p.tmdb_id, p.imdb_id, p.name, p.known_for_department
            FROM credits c
            JOIN people p ON p.id = c.person_id
            WHERE c.movie_id = ?
            """,
            (movie_id,),
        ).fetchall()

    def rebuild_collaborations(self, min_shared_movies: int = 2) -> int:
        now_ts = now_epoch()
        with self.conn:
            self.conn.execute("DELETE FROM collaborations")
            self.conn.execute(
                """
                INSERT INTO collaborations(person_a_id, person_b_id, movie_count, updated_at)
                SELECT a.person_id, b.person_id, COUNT(DISTINCT a.movie_id), ?
                FROM credits a
                JOIN credits b
                  ON a.movie_id = b.movie_id AND a.person_id < b.person_id
                GROUP BY a.person_id, b.person_id
                HAVING COUNT(DISTINCT a.movie_id) >= ?
                """,
                (now_ts, int(min_shared_movies)),
            )
        row = self.conn.execute("SELECT COUNT(*) AS c FROM collaborations").fetchone()
        return int(row["c"] or 0)

    # -- lookup failures ------------------------------------------------------

    def record_lookup_failure(
        self,
        *,
        source: str,
        operation: str,
        target: str,
        error_kind: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO lookup_failures(source, operation, target, error_kind, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (source, operation, str(target), error_kind, compact_json(metadata or {}), now_epoch()),
            )

    def unreachable_tmdb_ids(self) -> Set[int]:
        """TMDb ids whose detail fetch failed permanently; gap analysis treats them as known."""
        rows = self.conn.execute(
            """
            SELECT DISTINCT target FROM lookup_failures
            WHERE source = 'tmdb' AND operation = 'get_movie'
              AND error_kind IN ('not_found', 'forbidden', 'invalid')
            """
        ).fetchall()
        return {value for value in (parse_int(row["target"]) for row in rows) if value is not None}

    def count_lookup_failures(self, source: Optional[str] = None) -> int:
        if source is None:
            row = self.conn.execute("SELECT COUNT(*) AS c FROM lookup_failures").fetchone()
        else:
            row = self.conn.execute(
                "SELECT COUNT(*) AS c FROM lookup_failures WHERE source = ?", (source,)
            ).fetchone()
        return int(row["c"] or 0)

    # -- canonical lists ------------------------------------------------------

    def sync_movie_lists(self, lists: Dict[str, Dict[str, Any]]) -> None:
        now_ts = now_epoch()
        with self.conn:
            for source_key, entry in lists.items():
                self.conn.execute(
                    """
                    INSERT INTO movie_lists(source_key, list_id, name, metadata, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(source_key) DO UPDATE SET
                        list_id=excluded.list_id,
                        name=excluded.name,
                        metadata=excluded.metadata,
                        updated_at=excluded.updated_at
                    """,
                    (
                        source_key,
                        entry["list_id"],
                        entry["name"],
                        compact_json(entry.get("metadata") or {}),
                        now_ts,
                    ),
                )

    def get_movie_list(self, source_key: str) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM movie_lists WHERE source_key = ?", (source_key,)
        ).fetchone()

    def list_movie_lists(self) -> List[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM movie_lists ORDER BY source_key"
        ).fetchall()

    def update_movie_list(
        self,
        source_key: str,
        *,
        status: Optional[str] = None,
        expected_movie_count: Optional[int] = None,
        last_movie_count: Optional[int] = None,
        increment_imports: bool = False,
    ) -> None:
        now_ts = now_epoch()
        with self.conn:
            self.conn.execute(
                """
                UPDATE movie_lists
                SET last_import_status = COALESCE(?, last_import_status),
                    last_import_at = CASE WHEN ? IS NULL THEN last_import_at ELSE ? END,
                    expected_movie_count = COALESCE(?, expected_movie_count),
                    last_movie_count = COALESCE(?, last_movie_count),
                    total_imports = total_imports + ?,
                    updated_at = ?
                WHERE source_key = ?
                """,
                (
                    status,
                    status,
                    now_ts,
                    expected_movie_count,
                    last_movie_count,
                    1 if increment_imports else 0,
                    now_ts,
                    source_key,
                ),
            )

    # -- festivals ------------------------------------------------------------

    def sync_festival_organizations(self, events: Dict[str, Dict[str, Any]]) -> Dict[str, int]:
        ids: Dict[str, int] = {}
        with self.conn:
            for key, entry in events.items():
                self.conn.execute(
                    """
                    INSERT INTO festival_organizations(
                        key, name, abbreviation, imdb_event_id, country, founded_year
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        name=excluded.name,
                        abbreviation=excluded.abbreviation,
                        imdb_event_id=excluded.imdb_event_id,
                        country=excluded.country,
                        founded_year=excluded.founded_year
                    """,
                    (
                        key,
                        entry["name"],
                        entry["abbreviation"],
                        entry.get("imdb_event_id"),
                        entry.get("country"),
                        parse_int(entry.get("founded_year")),
                    ),
                )
                row = self.conn.execute(
                    "SELECT id FROM festival_organizations WHERE key = ?", (key,)
                ).fetchone()
                ids[key] = int(row["id"])
        return ids

    def get_festival_organization(self, organization_id: int) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM festival_organizations WHERE id = ?", (organization_id,)
        ).fetchone()

    def find_festival_organization(self, key_or_abbreviation: str) -> Optional[sqlite3.Row]:
        value = str(key_or_abbreviation).strip()
        return self.conn.execute(
            """
            SELECT * FROM festival_organizations
            WHERE key = ? OR UPPER(abbreviation) = UPPER(?)
            ORDER BY id
            LIMIT 1
            """,
            (value.lower(), value),
        ).fetchone()

    def list_festival_organizations(self) -> List[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM festival_organizations ORDER BY key"
        ).fetchall()

    def upsert_ceremony(
        self,
        *,
        organization_id: int,
        year: int,
        name: str,
        data: Optional[Dict[str, Any]],
        data_source: str,
        source_url: Optional[str],
        import_status: str,
    ) -> int:
        now_ts = now_epoch()
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO festival_ceremonies(
                    organization_id, year, name, data, data_source, source_url,
                    import_status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(organization_id, year) DO UPDATE SET
                    name=excluded.name,
                    data=COALESCE(excluded.data, festival_ceremonies.data),
                    data_source=excluded.data_source,
                    source_url=COALESCE(excluded.source_url, festival_ceremonies.source_url),
                    import_status=excluded.import_status,
                    updated_at=excluded.updated_at
                """,
                (
                    organization_id,
                    year,
                    name,
                    compact_json(data) if data is not None else None,
                    data_source,
                    source_url,
                    import_status,
                    now_ts,
                    now_ts,
                ),
            )
        row = self.get_ceremony_by_year(organization_id, year)
        return int(row["id"])

    def get_ceremony(self, ceremony_id: int) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM festival_ceremonies WHERE id = ?", (ceremony_id,)
        ).fetchone()

    def get_ceremony_by_year(self, organization_id: int, year: int) -> Optional[sqlite3.Row]:
        return self.conn.execute(
            "SELECT * FROM festival_ceremonies WHERE organization_id = ? AND year = ?",
            (organization_id, year),
        ).fetchone()

    def set_ceremony_status(self, ceremony_id: int, import_status: str) -> None:
        with self.conn:
            self.conn.execute(
                "UPDATE festival_ceremonies SET import_status = ?, updated_at = ? WHERE id = ?",
                (import_status, now_epoch(), ceremony_id),
            )

    def upsert_category(
        self,
        *,
        organization_id: int,
        name: str,
        category_type: str,
        tracks_person: bool,
    ) -> int:
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO festival_categories(organization_id, name, category_type, tracks_person)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(organization_id, name) DO NOTHING
                """,
                (organization_id, name, category_type, 1 if tracks_person else 0),
            )
        row = self.conn.execute(
            "SELECT id FROM festival_categories WHERE organization_id = ? AND name = ?",
            (organization_id, name),
        ).fetchone()
        return int(row["id"])

    def find_nomination(
        self,
        *,
        ceremony_id: int,
        category_id: int,
        movie_id: Optional[int] = None,
        movie_imdb_id: Optional[str] = None,
        person_id: Optional[int] = None,
        person_imdb_ids: Optional[List[str]] = None,
        person_name: Optional[str] = None,
    ) -> Optional[sqlite3.Row]:
        """Existing nomination for the same ceremony, category and entity.

        Identity is checked strongest first: person id, overlapping person
        IMDb ids, person name, then the movie alone when no person is known.
        """
        movie_clause = "(movie_id = ? OR (movie_id IS NULL AND movie_imdb_id = ?))"
        movie_params: Tuple[Any, ...] = (movie_id, movie_imdb_id)
        base = "SELECT * FROM festival_nominations WHERE ceremony_id = ? AND category_id = ?"

        if person_id is not None:
            row = self.conn.execute(
                f"{base} AND {movie_clause} AND person_id = ? LIMIT 1",
                (ceremony_id, category_id) + movie_params + (person_id,),
            ).fetchone()
            if row is not None:
                return row

        if person_imdb_ids:
            rows = self.conn.execute(
                f"{base} AND {movie_clause} AND person_imdb_ids != '[]'",
                (ceremony_id, category_id) + movie_params,
            ).fetchall()
            wanted = set(person_imdb_ids)
            for row in rows:
                try:
                    stored = set(json.loads(row["person_imdb_ids"] or "[]"))
                except ValueError:
                    stored = set()
                if stored & wanted:
                    return row

        if person_name:
            row = self.conn.execute(
                f"{base} AND {movie_clause} AND LOWER(person_name) = LOWER(?) LIMIT 1",
                (ceremony_id, category_id) + movie_params + (person_name,),
            ).fetchone()
            if row is not None:
                return row

        if person_id is None and not person_imdb_ids and not person_name:
            return self.conn.execute(
                f"{base} AND {movie_clause} AND person_id IS NULL LIMIT 1",
                (ceremony_id, category_id) + movie_params,
            ).fetchone()
        return None

    def create_nomination(
        self,
        *,
        ceremony_id: int,
        category_id: int,
        movie_id: Optional[int],
        movie_imdb_id: Optional[str],
        movie_title: Optional[str],
        person_id: Optional[int],
        person_imdb_ids: Optional[List[str]],
        person_name: Optional[str],
        won: bool,
        details: Optional[Dict[str, Any]] = None,
    ) -> int:
        now_ts = now_epoch()
        with self.conn:
            cursor = self.conn.execute(
                """
                INSERT INTO festival_nominations(
                    ceremony_id, category_id, movie_id, movie_imdb_id, movie_title,
                    person_id, person_imdb_ids, person_name, won, details,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    ceremony_id,
                    category_id,
                    movie_id,
                    movie_imdb_id,
                    movie_title,
                    person_id,
                    json.dumps(sorted(set(person_imdb_ids or []))),
                    person_name,
                    1 if won else 0,
                    compact_json(details or {}),
                    now_ts,
                    now_ts,
                ),
            )
        return int(cursor.lastrowid)

    def update_nomination(
        self,
        nomination_id: int,
        *,
        movie_id: Optional[int] = None,
        person_id: Optional[int] = None,
        won: Optional[bool] = None,
    ) -> None:
        with self.conn:
            self.conn.execute(
                """
                UPDATE festival_nominations
                SET movie_id = COALESCE(?, movie_id),
                    person_id = COALESCE(?, person_id),
                    won = COALESCE(?, won),
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    movie_id,
                    person_id,
                    None if won is None else (1 if won else 0),
                    now_epoch(),
                    nomination_id,
                ),
            )

    def link_pending_nominations(self, movie_id: int, imdb_id: Optional[str]) -> int:
        if not imdb_id:
            return 0
        with self.conn:
            cursor = self.conn.execute(
                """
                UPDATE festival_nominations
                SET movie_id = ?, updated_at = ?
                WHERE movie_id IS NULL AND movie_imdb_id = ?
                """,
                (movie_id, now_epoch(), imdb_id),
            )
        return int(cursor.rowcount)

    def nominations_missing_person(self, ceremony_id: int) -> List[sqlite3.Row]:
        """Person-tracking nominations of a ceremony that have no linked person yet."""
        return self.conn.execute(
            """
            SELECT n.id, n.movie_id, n.movie_title, c.name AS category_name
            FROM festival_nominations n
            JOIN festival_categories c ON c.id = n.category_id
            WHERE n.ceremony_id = ? AND n.person_id IS NULL AND c.tracks_person = 1
            ORDER BY n.id
            """,
            (ceremony_id,),
        ).fetchall()

    def find_director_credit(self, movie_id: int) -> Optional[sqlite3.Row]:
        """The movie's "Director" crew credit, else any Directing job naming a director."""
        return self.conn.execute(
            """
            SELECT person_id, job
            FROM credits
            WHERE movie_id = ? AND credit_type = 'crew' AND department = 'Directing'
              AND LOWER(job) LIKE '%director%'
            ORDER BY CASE WHEN job = 'Director' THEN 0 ELSE 1 END, id
            LIMIT 1
            """,
            (movie_id,),
        ).fetchone()

    def count_nominations(self, ceremony_id: int) -> Tuple[int, int]:
        row = self.conn.execute(
            """
            SELECT COUNT(*) AS total, SUM(CASE WHEN movie_id IS NOT NULL THEN 1 ELSE 0 END) AS matched
            FROM festival_nominations
            WHERE ceremony_id = ?
            """,
            (ceremony_id,),
        ).fetchone()
        return int(row["total"] or 0), int(row["matched"] or 0)

    def ceremonies_for_organization(self, organization_id: int) -> List[sqlite3.Row]:
        return self.conn.execute(
            """
            SELECT c.id, c.year, c.import_status,
                   COUNT(n.id) AS total,
                   SUM(CASE WHEN n.movie_id IS NOT NULL THEN 1 ELSE 0 END) AS matched
            FROM festival_ceremonies c
            LEFT JOIN festival_nominations n ON n.ceremony_id = c.id
            WHERE c.organization_id = ?
            GROUP BY c.id
            ORDER BY c.year DESC
            """,
            (organization_id,),
        ).fetchall()

    def dashboard_snapshot(self) -> Dict[str, int]:
        row = self.conn.execute(
            """
            SELECT
                (SELECT COUNT(*) FROM movies) AS movies_total,
                (SELECT COUNT(*) FROM movies WHERE import_status = 'soft') AS movies_soft,
                (SELECT COUNT(*) FROM people) AS people_total,
                (SELECT COUNT(*) FROM festival_ceremonies) AS ceremonies_total,
                (SELECT COUNT(*) FROM festival_nominations) AS nominations_total,
                (SELECT COUNT(*) FROM festival_nominations WHERE movie_id IS NULL) AS nominations_pending,
                (SELECT COUNT(*) FROM lookup_failures) AS lookup_failures
            """
        ).fetchone()
        return {key: int(row[key] or 0) for key in row.keys()}
