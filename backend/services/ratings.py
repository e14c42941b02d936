"""
Source jobs for CBB team data.

Sources
-------
teams      (barttorvik.com CSV)         team directory; creates canonical teams
BartTorvik (barttorvik.com CSV)         AdjOE / AdjDE / tempo per team
KenPom     (Official API, Bearer token) AdjOE / AdjDE / AdjTempo per team
ESPN       (espn.com HTML table)        record and scoring per team

Each job implements the scrape / validate / transform / save contract from
``backend.pipeline.jobs`` and is scheduled through ``run_source_job``.
Stats jobs depend on the ``teams`` directory job: they resolve names against
existing teams and never create new ones.

BartTorvik robustness
----------------------
Column detection uses CSV header names rather than hardcoded column indexes.
If the site restructures its CSV, the scraper logs and falls back to
positional parsing (Rk=0, team=1, conf=2, G=3, Rec=4, AdjOE=5, AdjDE=6).
"""

import csv
import io
import logging
import os
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional

import requests
from bs4 import BeautifulSoup
from dotenv import load_dotenv
from sqlalchemy.exc import IntegrityError

from backend.models import SessionLocal, Team, TeamStat
from backend.pipeline.errors import AuthError, RateLimitError, SourceTimeoutError
from backend.pipeline.jobs import JobResult
from backend.services.entity_resolver import EntityResolver

load_dotenv()

logger = logging.getLogger(__name__)

_KENPOM_URL = "https://kenpom.com/api.php"
_ESPN_URL = os.getenv(
    "ESPN_STATS_URL",
    "https://www.espn.com/mens-college-basketball/stats/team",
)
_HTTP_TIMEOUT = int(os.getenv("SOURCE_HTTP_TIMEOUT", "15"))
MIN_TEAMS = int(os.getenv("PIPELINE_MIN_TEAMS", "50"))

# Plausible bounds for adjusted efficiency (points per 100 possessions).
EFFICIENCY_RANGE = (60.0, 150.0)

_HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; cbb-stats-pipeline/1.0)",
    "Accept": "text/html,application/json,text/csv;q=0.9,*/*;q=0.8",
}


def current_season(today: Optional[date] = None) -> int:
    """
    Season year a date belongs to.  A season is named for the calendar year
    it ends in, so August through December count toward next year.
    ``SEASON_YEAR`` in the environment overrides the computation.
    """
    override = os.getenv("SEASON_YEAR")
    if override:
        return int(override)
    today = today or date.today()
    return today.year + 1 if today.month >= 8 else today.year


def barttorvik_url(season: int) -> str:
    return os.getenv("BARTTORVIK_URL", f"https://barttorvik.com/{season}_team_results.csv")


def fetch(url: str, **kwargs) -> requests.Response:
    """
    GET ``url`` and translate failure modes into pipeline error types so the
    retry handler picks the right policy.  Connection errors propagate as-is
    and classify as network failures.
    """
    headers = dict(_HEADERS)
    headers.update(kwargs.pop("headers", {}) or {})
    try:
        response = requests.get(url, headers=headers, timeout=_HTTP_TIMEOUT, **kwargs)
    except requests.exceptions.Timeout as exc:
        raise SourceTimeoutError(f"Request to {url} timed out: {exc}") from exc

    if response.status_code == 429:
        raise RateLimitError(f"429 Too Many Requests from {url}")
    if response.status_code in (401, 403):
        raise AuthError(f"{response.status_code} Unauthorized from {url}")
    response.raise_for_status()
    return response


# ---------------------------------------------------------------------------
# Row / record types
# ---------------------------------------------------------------------------

@dataclass
class TeamRow:
    """One team as scraped, before name resolution."""

    name: str
    conference: Optional[str] = None
    games_played: Optional[int] = None
    wins: Optional[int] = None
    losses: Optional[int] = None
    adj_oe: Optional[float] = None
    adj_de: Optional[float] = None
    tempo: Optional[float] = None
    rank: Optional[int] = None
    raw: Dict[str, str] = field(default_factory=dict)


@dataclass
class StatRecord:
    team_id: int
    row: TeamRow


def _to_float(value) -> Optional[float]:
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def _to_int(value) -> Optional[int]:
    number = _to_float(value)
    return int(number) if number is not None else None


def _parse_record(text: str):
    """"24-7" -> (24, 7)."""
    parts = str(text or "").strip().split("-")
    if len(parts) != 2:
        return None, None
    return _to_int(parts[0]), _to_int(parts[1])


def _find_col(header: List[str], candidates) -> Optional[int]:
    for candidate in candidates:
        if candidate in header:
            return header.index(candidate)
    return None


def parse_barttorvik_csv(text: str) -> List[TeamRow]:
    """Parse the BartTorvik team results CSV into TeamRows."""
    reader = csv.reader(io.StringIO(text))
    rows = [row for row in reader if any(cell.strip() for cell in row)]
    if not rows:
        logger.warning("BartTorvik CSV is empty")
        return []

    header = [h.strip().lower() for h in rows[0]]
    has_header = "team" in header or "adjoe" in header

    cols = {
        "rank": _find_col(header, ("rk", "rank")),
        "team": _find_col(header, ("team", "teamname", "team_name", "school")),
        "conf": _find_col(header, ("conf", "conference")),
        "games": _find_col(header, ("g", "games")),
        "record": _find_col(header, ("rec", "record")),
        "adjoe": _find_col(header, ("adjoe", "adj_oe", "adj oe")),
        "adjde": _find_col(header, ("adjde", "adj_de", "adj de")),
        "tempo": _find_col(header, ("adjt", "adj t", "adj_t", "tempo")),
    }
    # Rk(0) team(1) conf(2) G(3) Rec(4) AdjOE(5) AdjDE(6)
    for key, pos in (("rank", 0), ("team", 1), ("conf", 2), ("games", 3),
                     ("record", 4), ("adjoe", 5), ("adjde", 6)):
        if cols[key] is None:
            logger.debug("BartTorvik: %s column not in header; using index %d", key, pos)
            cols[key] = pos

    body = rows[1:] if has_header else rows
    labels = header if has_header else []
    parsed: List[TeamRow] = []
    for row in body:
        if len(row) <= max(cols["team"], cols["adjoe"], cols["adjde"]):
            continue
        name = row[cols["team"]].strip()
        if not name:
            continue

        def _cell(key):
            pos = cols[key]
            return row[pos] if pos is not None and pos < len(row) else None

        wins, losses = _parse_record(_cell("record"))
        parsed.append(TeamRow(
            name=name,
            conference=(_cell("conf") or "").strip() or None,
            games_played=_to_int(_cell("games")),
            wins=wins,
            losses=losses,
            adj_oe=_to_float(_cell("adjoe")),
            adj_de=_to_float(_cell("adjde")),
            tempo=_to_float(_cell("tempo")),
            rank=_to_int(_cell("rank")),
            raw=dict(zip(labels, row)) if labels else {},
        ))
    return parsed


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

class TeamDirectoryJob:
    """
    Seed canonical teams from the BartTorvik team list.

    Writes freshness under data type ``teams``, which is what the stats jobs'
    dependency gate checks.
    """

    source = "teams"
    job_type = "teams"
    alias_source = "barttorvik"

    def __init__(self, session_factory=SessionLocal, season: Optional[int] = None,
                 min_teams: int = MIN_TEAMS):
        self._session_factory = session_factory
        self.season = season or current_season()
        self.min_teams = min_teams
        self._created = 0

    def scrape(self) -> List[TeamRow]:
        response = fetch(barttorvik_url(self.season))
        return parse_barttorvik_csv(response.text)

    def validate(self, rows: List[TeamRow]) -> List[str]:
        if len(rows) < self.min_teams:
            return [f"expected at least {self.min_teams} teams, got {len(rows)}"]
        return []

    def transform(self, rows: List[TeamRow]) -> List[StatRecord]:
        resolver = EntityResolver(self._session_factory)
        records: List[StatRecord] = []
        self._created = 0
        for row in rows:
            result = resolver.resolve_entity_id(
                row.name, self.alias_source, auto_create=True, group_id=row.conference,
                allow_fuzzy=False,
            )
            if result.was_created:
                self._created += 1
            records.append(StatRecord(team_id=result.entity_id, row=row))
        return records

    def save(self, records: List[StatRecord]) -> JobResult:
        """Backfill conferences on teams that were created without one."""
        updated = 0
        db = self._session_factory()
        try:
            for record in records:
                if not record.row.conference:
                    continue
                updated += (
                    db.query(Team)
                    .filter(Team.id == record.team_id, Team.conference.is_(None))
                    .update({Team.conference: record.row.conference}, synchronize_session=False)
                )
            db.commit()
        finally:
            db.close()

        return JobResult(
            success=True,
            records_processed=len(records),
            records_created=self._created,
            records_updated=updated,
            metadata={"season": self.season},
        )


class TeamStatsJob:
    """Shared validate / transform / save for per-team stats sources."""

    source = ""
    job_type = "team_stats"
    check_efficiency = True

    def __init__(self, session_factory=SessionLocal, season: Optional[int] = None,
                 min_teams: int = MIN_TEAMS):
        self._session_factory = session_factory
        self.season = season or current_season()
        self.min_teams = min_teams
        self._unresolved: List[str] = []

    def scrape(self) -> List[TeamRow]:
        raise NotImplementedError

    def validate(self, rows: List[TeamRow]) -> List[str]:
        problems = []
        if len(rows) < self.min_teams:
            problems.append(f"expected at least {self.min_teams} teams, got {len(rows)}")

        if self.check_efficiency:
            low, high = EFFICIENCY_RANGE
            bad = [
                row.name for row in rows
                if row.adj_oe is None or row.adj_de is None
                or not (low <= row.adj_oe <= high and low <= row.adj_de <= high)
            ]
            if bad:
                sample = ", ".join(bad[:5])
                problems.append(f"{len(bad)} teams with missing or out-of-range efficiency ({sample})")
        return problems

    def transform(self, rows: List[TeamRow]) -> List[StatRecord]:
        resolver = EntityResolver(self._session_factory)
        resolved = resolver.resolve_entity_ids([(row.name, self.source) for row in rows])

        records: List[StatRecord] = []
        self._unresolved = []
        for row in rows:
            result = resolved.get(f"{self.source}:{row.name}")
            if result is None:
                self._unresolved.append(row.name)
                continue
            records.append(StatRecord(team_id=result.entity_id, row=row))

        if self._unresolved:
            logger.warning("[%s] %d teams could not be resolved", self.source, len(self._unresolved))
        return records

    def save(self, records: List[StatRecord]) -> JobResult:
        try:
            created, updated = self._upsert(records)
        except IntegrityError:
            # A concurrent run inserted some of the same rows; they exist now.
            logger.info("[%s] concurrent team_stats insert, retrying as update", self.source)
            created, updated = self._upsert(records)

        warnings = []
        if self._unresolved:
            sample = ", ".join(self._unresolved[:10])
            warnings.append(f"{self.source}: {len(self._unresolved)} unresolved teams ({sample})")

        return JobResult(
            success=True,
            records_processed=len(records),
            records_created=created,
            records_updated=updated,
            records_failed=len(self._unresolved),
            warnings=warnings,
            metadata={"season": self.season},
        )

    def _upsert(self, records: List[StatRecord]):
        created = updated = 0
        now = datetime.utcnow()
        db = self._session_factory()
        try:
            existing = {
                stat.team_id: stat
                for stat in db.query(TeamStat).filter(
                    TeamStat.season == self.season, TeamStat.source == self.source
                )
            }
            for record in records:
                row = record.row
                stat = existing.get(record.team_id)
                if stat is None:
                    stat = TeamStat(team_id=record.team_id, season=self.season, source=self.source)
                    db.add(stat)
                    existing[record.team_id] = stat
                    created += 1
                else:
                    updated += 1

                stat.games_played = row.games_played
                stat.wins = row.wins
                stat.losses = row.losses
                stat.offensive_efficiency = row.adj_oe
                stat.defensive_efficiency = row.adj_de
                if row.adj_oe is not None and row.adj_de is not None:
                    stat.efficiency_margin = round(row.adj_oe - row.adj_de, 2)
                else:
                    stat.efficiency_margin = None
                stat.tempo = row.tempo
                stat.overall_rank = row.rank
                stat.raw_stats = row.raw
                stat.updated_at = now
            db.commit()
        except IntegrityError:
            db.rollback()
            raise
        finally:
            db.close()
        return created, updated


class BartTorvikStatsJob(TeamStatsJob):
    source = "barttorvik"

    def scrape(self) -> List[TeamRow]:
        response = fetch(barttorvik_url(self.season))
        return parse_barttorvik_csv(response.text)


class KenPomStatsJob(TeamStatsJob):
    """KenPom official API.  Only schedulable when ``KENPOM_API_KEY`` is set."""

    source = "kenpom"

    def __init__(self, session_factory=SessionLocal, season: Optional[int] = None,
                 min_teams: int = MIN_TEAMS, api_key: Optional[str] = None):
        super().__init__(session_factory, season, min_teams)
        self.api_key = api_key if api_key is not None else os.getenv("KENPOM_API_KEY")

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def scrape(self) -> List[TeamRow]:
        if not self.api_key:
            raise AuthError("KenPom API key not set")

        response = fetch(
            _KENPOM_URL,
            headers={"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"},
            params={"endpoint": "ratings", "y": self.season},
        )
        rows: List[TeamRow] = []
        for team in response.json():
            name = (team.get("TeamName") or "").strip()
            if not name:
                continue
            rows.append(TeamRow(
                name=name,
                conference=team.get("ConfShort"),
                wins=_to_int(team.get("Wins")),
                losses=_to_int(team.get("Losses")),
                adj_oe=_to_float(team.get("AdjOE")),
                adj_de=_to_float(team.get("AdjDE")),
                tempo=_to_float(team.get("AdjTempo")),
                rank=_to_int(team.get("RankAdjEM")),
                raw={k: str(v) for k, v in team.items()},
            ))
        for row in rows:
            if row.wins is not None and row.losses is not None:
                row.games_played = row.wins + row.losses
        logger.info("KenPom: loaded %d teams", len(rows))
        return rows


class ESPNStatsJob(TeamStatsJob):
    """ESPN team stats table.  No efficiency columns, so only counts are checked."""

    source = "espn"
    check_efficiency = False

    def __init__(self, session_factory=SessionLocal, season: Optional[int] = None,
                 min_teams: int = MIN_TEAMS, url: Optional[str] = None):
        super().__init__(session_factory, season, min_teams)
        self.url = url or _ESPN_URL

    def scrape(self) -> List[TeamRow]:
        response = fetch(self.url)
        return parse_espn_table(response.text)


def parse_espn_table(html: str) -> List[TeamRow]:
    """Parse the first HTML table that has a team column."""
    soup = BeautifulSoup(html, "lxml")
    for table in soup.find_all("table"):
        header_row = table.find("tr")
        if header_row is None:
            continue
        labels = [
            th.get_text(strip=True).lower()
            for th in header_row.find_all(["th", "td"])
        ]
        team_col = _find_col(labels, ("team", "school", "name"))
        if team_col is None:
            continue
        gp_col = _find_col(labels, ("gp", "g", "games"))
        w_col = _find_col(labels, ("w", "wins"))
        l_col = _find_col(labels, ("l", "losses"))
        rec_col = _find_col(labels, ("rec", "record", "w-l"))

        rows: List[TeamRow] = []
        for tr in table.find_all("tr")[1:]:
            cells = [td.get_text(strip=True) for td in tr.find_all(["td", "th"])]
            if len(cells) <= team_col or not cells[team_col]:
                continue

            def _cell(col):
                return cells[col] if col is not None and col < len(cells) else None

            wins, losses = _to_int(_cell(w_col)), _to_int(_cell(l_col))
            if wins is None and rec_col is not None:
                wins, losses = _parse_record(_cell(rec_col))
            games = _to_int(_cell(gp_col))
            if games is None and wins is not None and losses is not None:
                games = wins + losses

            rows.append(TeamRow(
                name=cells[team_col],
                games_played=games,
                wins=wins,
                losses=losses,
                raw=dict(zip(labels, cells)),
            ))
        if rows:
            logger.info("ESPN: parsed %d teams", len(rows))
            return rows

    logger.warning("ESPN: no team table found")
    return []
