"""
Canonical team-name normalization.

Every source spells teams its own way ("Michigan St Spartans",
"Michigan State", "Michigan St.").  ``normalize_team_name`` folds those
spellings onto one canonical form before the entity resolver compares them.

The function is pure and idempotent:
``normalize_team_name(normalize_team_name(x)) == normalize_team_name(x)``.
Every value in ``TEAM_ALIASES`` must therefore already be a fixed point of
the normalizer.
"""

from __future__ import annotations

import logging
import re
import unicodedata

logger = logging.getLogger(__name__)

# Parenthetical disambiguators used by KenPom / Torvik style listings.
# "Loyola (Chi)" -> "Loyola Chicago", "Miami (OH)" -> "Miami Ohio".
PAREN_CODES: dict[str, str] = {
    "chi": "Chicago",
    "md": "Maryland",
    "pa": "Pennsylvania",
    "mn": "Minnesota",
    "oh": "Ohio",
    "fl": "Florida",
    "ny": "New York",
    "ca": "California",
    "tx": "Texas",
    "la": "Louisiana",
}

# Multi-word mascots first matters: "Blue Devils" must win over "Devils".
COMMON_MASCOTS: list[str] = [
    "49ers", "Aggies", "Anteaters", "Antelopes", "Aztecs", "Badgers", "Bearcats",
    "Bearkats", "Bears", "Beavers", "Big Green", "Big Red", "Billikens", "Bison",
    "Black Bears", "Black Knights", "Blazers", "Blue Demons", "Blue Devils",
    "Blue Hens", "Blue Hose", "Blue Raiders", "Bluejays", "Blue Jays", "Bobcats",
    "Boilermakers", "Bonnies", "Braves", "Broncos", "Bruins", "Buccaneers",
    "Buckeyes", "Buffaloes", "Bulldogs", "Bulls", "Camels", "Cardinal",
    "Cardinals", "Catamounts", "Cavaliers", "Chanticleers", "Chippewas",
    "Colonels", "Colonials", "Commodores", "Cornhuskers", "Cougars", "Cowboys",
    "Coyotes", "Crimson", "Crimson Tide", "Crusaders", "Cyclones", "Delta Devils",
    "Demon Deacons", "Dolphins", "Dons", "Dragons", "Ducks", "Dukes", "Eagles",
    "Explorers", "Falcons", "Fighting Camels", "Fighting Hawks", "Fighting Illini",
    "Fighting Irish", "Flames", "Flyers", "Friars", "Gaels", "Gamecocks", "Gators",
    "Gauchos", "Bengals", "Golden Bears", "Golden Eagles", "Golden Flashes", "Golden Gophers",
    "Golden Lions", "Islanders", "Lakers", "Lopes",
    "Golden Griffins", "Golden Grizzlies", "Golden Hurricane", "Golden Panthers",
    "Governors", "Great Danes", "Green Wave", "Greyhounds", "Grizzlies", "Hatters",
    "Hawkeyes", "Hawks", "Highlanders", "Hilltoppers", "Hokies", "Hoosiers",
    "Horned Frogs", "Hornets", "Hurricanes", "Huskies", "Jackrabbits", "Jaguars",
    "Jaspers", "Jayhawks", "Kangaroos", "Keydets", "Knights", "Lancers",
    "Leathernecks", "Leopards", "Lions", "Lobos", "Longhorns", "Lumberjacks",
    "Marauders", "Mastodons", "Matadors", "Mavericks", "Mean Green", "Midshipmen",
    "Miners", "Minutemen", "Mocs", "Monarchs", "Mountain Hawks", "Mountaineers",
    "Musketeers", "Mustangs", "Nittany Lions", "Norse", "Orange", "Ospreys", "Owls",
    "Paladins", "Panthers", "Patriots", "Peacocks", "Penguins", "Phoenix", "Pilots",
    "Pioneers", "Pirates", "Pride", "Privateers", "Purple Aces", "Purple Eagles",
    "Quakers", "Racers", "Ragin Cajuns", "Raiders", "Rainbow Warriors", "Ramblers",
    "Rams", "Rattlers", "Razorbacks", "Rebels", "Red Flash", "Red Foxes",
    "Red Raiders", "Red Storm", "Red Wolves", "Redbirds", "RedHawks",
    "Retrievers", "Revolutionaries", "River Hawks", "Roadrunners", "Rockets",
    "Runnin Bulldogs", "Runnin Rebels", "Salukis", "Scarlet Knights", "Screaming Eagles",
    "Seahawks", "Seawolves", "Seminoles", "Sharks", "Shockers", "Skyhawks", "Sooners",
    "Spartans", "Spiders", "Stags", "Sun Devils", "Sycamores", "Tar Heels",
    "Terrapins", "Terriers", "Texans", "Thundering Herd", "Thunderbirds", "Tigers",
    "Titans", "Tommies", "Toreros", "Tritons", "Trojans", "Utes", "Vandals",
    "Vaqueros", "Vikings", "Volunteers", "Warhawks", "Waves", "Wildcats",
    "Wolf Pack", "Wolfpack", "Wolverines", "Yellow Jackets", "Zips",
]
_MASCOTS_LONGEST_FIRST = sorted((m.lower() for m in COMMON_MASCOTS), key=len, reverse=True)

# Curated aliases, keyed by the normalized spelling (case-insensitive) and
# mapping to the canonical name.  Checked last, after all other rewrites.
TEAM_ALIASES: dict[str, str] = {
    "UNC": "North Carolina",
    "NC State": "North Carolina State",
    "GW": "George Washington",
    "UConn": "Connecticut",
    "UMass": "Massachusetts",
    "Ole Miss": "Mississippi",
    "Southern Miss": "Southern Mississippi",
    "Miami FL": "Miami",
    "Miami Florida": "Miami",
    "FIU": "Florida International",
    "Cal Baptist": "California Baptist",
    "CSU Bakersfield": "Cal State Bakersfield",
    "CSU Northridge": "Cal State Northridge",
    "CSU Fullerton": "Cal State Fullerton",
    "Fort Wayne": "Purdue Fort Wayne",
    "IUPUI": "IU Indianapolis",
    "Tenn-Martin": "UT Martin",
    "UT-Arlington": "UT Arlington",
    "UTRGV": "UT Rio Grande Valley",
    "Texas A&M-CC": "Texas A&M Corpus Christi",
    "Saint John": "Saint Johns",
    "Saint Johns New York": "Saint Johns",
    "Saint Mary": "Saint Marys",
    "Saint Marys California": "Saint Marys",
    "Saint Joseph": "Saint Josephs",
    "Saint Thomas Minnesota": "Saint Thomas",
    "Southeastern Missouri State": "Southeast Missouri",
    "Southeast Missouri State": "Southeast Missouri",
    "SFA": "Stephen F Austin",
    "Louisiana Lafayette": "Louisiana",
    "Massachusetts Lowell": "UMass Lowell",
}
_ALIASES_BY_KEY = {key.lower(): value for key, value in TEAM_ALIASES.items()}

_PAREN_RE = re.compile(r"\(([^)]*)\)")
_DROP_RE = re.compile(r"[.'’`]")
_PUNCT_RE = re.compile(r"[^\w\s&-]")
_SPACE_RE = re.compile(r"\s+")


def _fold_accents(name: str) -> str:
    """"San José State" -> "San Jose State"."""
    decomposed = unicodedata.normalize("NFKD", name)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def _expand_paren(match: re.Match) -> str:
    inner = match.group(1).strip()
    return " " + PAREN_CODES.get(inner.lower(), inner) + " "


def _expand_tokens(words: list[str]) -> list[str]:
    out: list[str] = []
    for i, word in enumerate(words):
        if word == "St":
            # Leading "St" (or after "Mount") is Saint; anywhere else State.
            if i == 0 or (out and out[-1] == "Mount"):
                word = "Saint"
            else:
                word = "State"
        elif word == "Univ":
            word = "University"
        elif word == "Intl":
            word = "International"
        elif word == "SE" and i == 0:
            word = "Southeastern"
        out.append(word)
    return out


def _strip_mascot(name: str) -> str:
    """Remove trailing mascots, keeping at least one word of the school name."""
    while True:
        lowered = name.lower()
        for mascot in _MASCOTS_LONGEST_FIRST:
            if lowered.endswith(" " + mascot):
                name = name[: -(len(mascot) + 1)].rstrip()
                break
        else:
            return name


def normalize_team_name(name: str) -> str:
    """
    Fold a raw team name from any source onto its canonical spelling.

    Steps, in order: accent folding, parenthetical state codes, punctuation
    removal (``&`` and ``-`` survive), abbreviation expansion (St, Univ,
    Int'l, leading SE), mascot stripping, whitespace collapse, curated
    alias map.
    """
    if not name:
        return ""

    text = _fold_accents(name)
    text = _PAREN_RE.sub(_expand_paren, text)
    text = _DROP_RE.sub("", text)
    text = _PUNCT_RE.sub(" ", text)

    words = _expand_tokens(text.split())
    text = _strip_mascot(" ".join(words))
    text = _SPACE_RE.sub(" ", text).strip()

    return _ALIASES_BY_KEY.get(text.lower(), text)
