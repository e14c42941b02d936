"""Tests for the source jobs in ratings.py with the network mocked out."""

from datetime import date
from unittest.mock import MagicMock, patch

import pytest
import requests

from backend.models import Team, TeamStat
from backend.pipeline.errors import (
    AuthError,
    RateLimitError,
    SourceTimeoutError,
    ValidationError,
)
from backend.pipeline.jobs import run_source_job
from backend.services.ratings import (
    BartTorvikStatsJob,
    ESPNStatsJob,
    KenPomStatsJob,
    TeamDirectoryJob,
    current_season,
    fetch,
    parse_barttorvik_csv,
    parse_espn_table,
)

BARTTORVIK_CSV = """rk,team,conf,g,rec,adjoe,adjde,barthag,adjt
1,Duke,ACC,31,27-4,125.1,89.2,0.97,68.1
2,Houston,B12,32,28-4,121.5,86.4,0.96,63.0
3,Michigan St.,B10,30,22-8,116.0,92.3,0.90,66.4
"""

ESPN_HTML = """
<html><body>
<table>
  <tr><th>RK</th><th>Team</th><th>GP</th><th>W</th><th>L</th><th>PTS</th></tr>
  <tr><td>1</td><td>Duke Blue Devils</td><td>31</td><td>27</td><td>4</td><td>83.1</td></tr>
  <tr><td>2</td><td>Houston Cougars</td><td>32</td><td>28</td><td>4</td><td>74.9</td></tr>
  <tr><td>3</td><td>Michigan State Spartans</td><td>30</td><td>22</td><td>8</td><td>77.0</td></tr>
</table>
</body></html>
"""


def _response(text="", status=200, json_data=None):
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    resp.json.return_value = json_data
    if status >= 400:
        resp.raise_for_status.side_effect = requests.exceptions.HTTPError(f"{status} Server Error")
    return resp


def _stats(session_factory, source):
    db = session_factory()
    rows = (
        db.query(Team.name, TeamStat)
        .join(TeamStat, TeamStat.team_id == Team.id)
        .filter(TeamStat.source == source)
        .order_by(Team.name)
        .all()
    )
    db.close()
    return rows


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def test_current_season_rolls_over_in_august(monkeypatch):
    monkeypatch.delenv("SEASON_YEAR", raising=False)
    assert current_season(date(2025, 11, 20)) == 2026
    assert current_season(date(2026, 3, 15)) == 2026
    assert current_season(date(2026, 7, 31)) == 2026
    assert current_season(date(2026, 8, 1)) == 2027


def test_current_season_env_override(monkeypatch):
    monkeypatch.setenv("SEASON_YEAR", "2024")
    assert current_season(date(2026, 3, 15)) == 2024


def test_parse_barttorvik_csv_by_header():
    rows = parse_barttorvik_csv(BARTTORVIK_CSV)
    assert [r.name for r in rows] == ["Duke", "Houston", "Michigan St."]
    duke = rows[0]
    assert (duke.conference, duke.games_played, duke.wins, duke.losses) == ("ACC", 31, 27, 4)
    assert (duke.adj_oe, duke.adj_de, duke.tempo, duke.rank) == (125.1, 89.2, 68.1, 1)
    assert duke.raw["barthag"] == "0.97"


def test_parse_barttorvik_csv_positional_fallback():
    rows = parse_barttorvik_csv("1,Duke,ACC,31,27-4,125.1,89.2\n")
    assert rows[0].name == "Duke"
    assert rows[0].adj_de == 89.2
    assert rows[0].tempo is None


def test_parse_espn_table():
    rows = parse_espn_table(ESPN_HTML)
    assert [r.name for r in rows][0] == "Duke Blue Devils"
    assert (rows[2].games_played, rows[2].wins, rows[2].losses) == (30, 22, 8)
    assert rows[0].adj_oe is None


# ---------------------------------------------------------------------------
# fetch() error mapping
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("status,error", [(429, RateLimitError), (401, AuthError), (403, AuthError)])
def test_fetch_maps_status_codes(status, error):
    with patch("backend.services.ratings.requests.get", return_value=_response(status=status)):
        with pytest.raises(error):
            fetch("https://example.com/data.csv")


def test_fetch_maps_timeouts():
    with patch("backend.services.ratings.requests.get",
               side_effect=requests.exceptions.ReadTimeout("read timed out")):
        with pytest.raises(SourceTimeoutError):
            fetch("https://example.com/data.csv")


def test_fetch_raises_server_errors():
    with patch("backend.services.ratings.requests.get", return_value=_response(status=503)):
        with pytest.raises(requests.exceptions.HTTPError):
            fetch("https://example.com/data.csv")


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

def test_directory_then_stats_end_to_end(session_factory):
    with patch("backend.services.ratings.requests.get", return_value=_response(BARTTORVIK_CSV)):
        directory = run_source_job(TeamDirectoryJob(session_factory, season=2026, min_teams=2))
        stats = run_source_job(BartTorvikStatsJob(session_factory, season=2026, min_teams=2))

    assert directory.records_created == 3
    assert stats.records_created == 3
    assert stats.records_failed == 0

    rows = _stats(session_factory, "barttorvik")
    assert [name for name, _ in rows] == ["Duke", "Houston", "Michigan State"]
    duke = rows[0][1]
    assert duke.efficiency_margin == pytest.approx(35.9)
    assert duke.season == 2026

    db = session_factory()
    team = db.query(Team).filter(Team.name == "Michigan State").one()
    assert team.conference == "B10"
    assert team.external_ids == {"barttorvik": "Michigan St."}
    db.close()


def test_stats_rerun_updates_instead_of_inserting(session_factory):
    with patch("backend.services.ratings.requests.get", return_value=_response(BARTTORVIK_CSV)):
        run_source_job(TeamDirectoryJob(session_factory, season=2026, min_teams=2))
        run_source_job(BartTorvikStatsJob(session_factory, season=2026, min_teams=2))
        again = run_source_job(BartTorvikStatsJob(session_factory, season=2026, min_teams=2))

    assert (again.records_created, again.records_updated) == (0, 3)
    assert len(_stats(session_factory, "barttorvik")) == 3


def test_espn_names_resolve_onto_directory_teams(session_factory):
    with patch("backend.services.ratings.requests.get", return_value=_response(BARTTORVIK_CSV)):
        run_source_job(TeamDirectoryJob(session_factory, season=2026, min_teams=2))
    with patch("backend.services.ratings.requests.get", return_value=_response(ESPN_HTML)):
        result = run_source_job(ESPNStatsJob(session_factory, season=2026, min_teams=2))

    assert result.records_created == 3
    rows = _stats(session_factory, "espn")
    assert [name for name, _ in rows] == ["Duke", "Houston", "Michigan State"]
    assert rows[2][1].wins == 22


def test_unresolved_teams_become_warnings(session_factory):
    with patch("backend.services.ratings.requests.get", return_value=_response(ESPN_HTML)):
        result = run_source_job(ESPNStatsJob(session_factory, season=2026, min_teams=2))

    # no directory yet: nothing resolves, nothing is created
    assert result.success is True
    assert result.records_processed == 0
    assert result.records_failed == 3
    assert result.warnings[0].startswith("espn: 3 unresolved teams")


def test_too_few_teams_fails_validation(session_factory):
    with patch("backend.services.ratings.requests.get", return_value=_response(BARTTORVIK_CSV)):
        with pytest.raises(ValidationError, match="expected at least 50 teams, got 3"):
            run_source_job(BartTorvikStatsJob(session_factory, season=2026, min_teams=50))


def test_out_of_range_efficiency_fails_validation(session_factory):
    bad = BARTTORVIK_CSV.replace("125.1", "925.1")
    with patch("backend.services.ratings.requests.get", return_value=_response(bad)):
        with pytest.raises(ValidationError, match="out-of-range efficiency \\(Duke\\)"):
            run_source_job(BartTorvikStatsJob(session_factory, season=2026, min_teams=2))


def test_kenpom_requires_key(session_factory):
    job = KenPomStatsJob(session_factory, season=2026, api_key="")
    assert job.enabled is False
    with pytest.raises(AuthError):
        job.scrape()


def test_kenpom_scrape_parses_api(session_factory):
    payload = [
        {"TeamName": "Duke", "ConfShort": "ACC", "Wins": 27, "Losses": 4,
         "AdjOE": 125.1, "AdjDE": 89.2, "AdjTempo": 68.1, "RankAdjEM": 1},
        {"TeamName": "", "AdjOE": 100},
    ]
    job = KenPomStatsJob(session_factory, season=2026, api_key="secret")
    with patch("backend.services.ratings.requests.get",
               return_value=_response(json_data=payload)) as get:
        rows = job.scrape()

    assert len(rows) == 1
    assert (rows[0].games_played, rows[0].adj_oe, rows[0].rank) == (31, 125.1, 1)
    _, kwargs = get.call_args
    assert kwargs["headers"]["Authorization"] == "Bearer secret"
    assert kwargs["params"] == {"endpoint": "ratings", "y": 2026}


NEAR_MISS_CSV = """rk,team,conf,g,rec,adjoe,adjde,barthag,adjt
1,North Carolina,ACC,31,22-9,118.2,95.0,0.88,70.1
2,South Carolina,SEC,31,12-19,107.4,99.8,0.60,65.2
3,Kansas St.,B12,32,16-16,110.9,98.7,0.70,66.8
4,Arkansas St.,SB,32,24-8,108.1,101.2,0.62,68.0
"""


def test_directory_keeps_similar_school_names_apart(session_factory):
    with patch("backend.services.ratings.requests.get", return_value=_response(NEAR_MISS_CSV)):
        directory = run_source_job(TeamDirectoryJob(session_factory, season=2026, min_teams=2))
        run_source_job(BartTorvikStatsJob(session_factory, season=2026, min_teams=2))

    assert directory.records_created == 4

    db = session_factory()
    teams = {t.name: dict(t.external_ids) for t in db.query(Team).all()}
    db.close()
    assert teams == {
        "North Carolina": {"barttorvik": "North Carolina"},
        "South Carolina": {"barttorvik": "South Carolina"},
        "Kansas State": {"barttorvik": "Kansas St."},
        "Arkansas State": {"barttorvik": "Arkansas St."},
    }

    wins = {name: stat.wins for name, stat in _stats(session_factory, "barttorvik")}
    assert wins == {"Arkansas State": 24, "Kansas State": 16,
                    "North Carolina": 22, "South Carolina": 12}
