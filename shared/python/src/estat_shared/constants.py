"""
constants.py — static e-Stat catalog tables shared across the pipeline.

Prefecture codes, the census small-area boundary releases, the mesh
statistics releases and the first-level mesh codes covering Japan are
defined here so the catalog, the loaders and the CLI stay in sync.
"""

from __future__ import annotations

from typing import Final, Literal, NamedTuple

# ---------------------------------------------------------------------------
# Prefectures: JIS X 0401 codes "01" (Hokkaido) .. "47" (Okinawa)
# ---------------------------------------------------------------------------
PREF_CODES: Final[tuple[str, ...]] = tuple(f"{i:02d}" for i in range(1, 48))

# ---------------------------------------------------------------------------
# Coordinate epochs (geodetic datums) and their SRIDs
# ---------------------------------------------------------------------------
Datum = Literal["2011", "2000"]

DATUM_JGD2011: Final[Datum] = "2011"
DATUM_JGD2000: Final[Datum] = "2000"

# Newest first; staging prefers the first epoch present in an archive.
DATUM_PREFERENCE: Final[tuple[Datum, ...]] = (DATUM_JGD2011, DATUM_JGD2000)

DATUM_SRIDS: Final[dict[str, int]] = {
    DATUM_JGD2011: 6668,   # JGD2011 geographic
    DATUM_JGD2000: 4612,   # JGD2000 geographic
}

# ---------------------------------------------------------------------------
# Census small-area boundaries (小地域境界): year -> release
# ---------------------------------------------------------------------------


class BoundarySurvey(NamedTuple):
    year: int
    survey_id: str
    datum: Datum


BOUNDARY_SURVEYS: Final[dict[int, BoundarySurvey]] = {
    2020: BoundarySurvey(2020, "A002005212020", DATUM_JGD2011),
    2015: BoundarySurvey(2015, "A002005212015", DATUM_JGD2011),
    2010: BoundarySurvey(2010, "A002005212010", DATUM_JGD2000),
    2005: BoundarySurvey(2005, "A002005212005", DATUM_JGD2000),
    2000: BoundarySurvey(2000, "A002005212000", DATUM_JGD2000),
}

# hcode 8154 is the "water survey area" (水面調査区) category
WATER_SURVEY_HCODE: Final[int] = 8154

BOUNDARY_SOURCE_URL: Final[str] = (
    "https://www.e-stat.go.jp/gis/statmap-search?page=1&type=2"
    "&aggregateUnitForBoundary=A&toukeiCode=00200521"
)
TERMS_OF_USE_URL: Final[str] = "https://www.e-stat.go.jp/terms-of-use"

# ---------------------------------------------------------------------------
# Mesh statistics (地域メッシュ統計)
# ---------------------------------------------------------------------------

MESH_LEVELS: Final[tuple[int, ...]] = (3, 4, 5)

# Digits in a KEY_CODE at each mesh level
MESH_CODE_DIGITS: Final[dict[int, int]] = {1: 4, 2: 6, 3: 8, 4: 9, 5: 10}


class MeshStats(NamedTuple):
    name: str
    year: int
    mesh_level: int
    stats_id: str
    datum_epsg: int


MESH_STATS: Final[tuple[MeshStats, ...]] = (
    MeshStats("国勢調査", 2020, 3, "T001140", 6668),
    MeshStats("国勢調査", 2020, 4, "T001141", 6668),
    MeshStats("国勢調査", 2020, 5, "T001142", 6668),
)

# First-level (80 km) mesh codes covering Japan's land area
JAPAN_LV1_MESH_CODES: Final[tuple[int, ...]] = (
    3036, 3622, 3623, 3624, 3631, 3641, 3653, 3724, 3725, 3741,
    3823, 3824, 3831, 3841, 3926, 3927, 3928, 3942, 4027, 4028,
    4040, 4042, 4128, 4129, 4142, 4229, 4230, 4328, 4329, 4429,
    4440, 4529, 4530, 4531, 4540, 4629, 4630, 4631, 4728, 4729,
    4730, 4731, 4739, 4740, 4828, 4829, 4830, 4831, 4839, 4928,
    4929, 4930, 4931, 4932, 4933, 4934, 4939, 5029, 5030, 5031,
    5032, 5033, 5034, 5035, 5036, 5038, 5039, 5129, 5130, 5131,
    5132, 5133, 5134, 5135, 5136, 5137, 5138, 5139, 5229, 5231,
    5232, 5233, 5234, 5235, 5236, 5237, 5238, 5239, 5240, 5332,
    5333, 5334, 5335, 5336, 5337, 5338, 5339, 5340, 5432, 5433,
    5435, 5436, 5437, 5438, 5439, 5440, 5531, 5536, 5537, 5538,
    5539, 5540, 5541, 5636, 5637, 5638, 5639, 5640, 5641, 5738,
    5739, 5740, 5741, 5839, 5840, 5841, 5939, 5940, 5941, 5942,
    6039, 6040, 6041, 6139, 6140, 6141, 6239, 6240, 6241, 6243,
    6339, 6340, 6341, 6342, 6343, 6439, 6440, 6441, 6442, 6443,
    6444, 6445, 6540, 6541, 6542, 6543, 6544, 6545, 6546, 6641,
    6642, 6643, 6644, 6645, 6646, 6647, 6741, 6742, 6747, 6748,
    6840, 6841, 6842, 6847, 6848,
)

MESH_SOURCE_URL: Final[str] = "https://www.e-stat.go.jp/gis/statmap-search?type=1"
