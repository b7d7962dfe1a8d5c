"""Project-wide named constants.

Constants defined here replace inline magic numbers across the codebase.
Each tuned constant has its empirical derivation documented beside it.
"""

MB: int = 1024 * 1024

# Empirical derivation:
# - An empty pypdf bundle with a title entry in /Info serialises to well
#   under 1 KB, but a bundle with an embedded font and outline entries
#   lands around 10-14 KB. 15,000 bytes covers the observed worst case.
# - A JPEG page wrapped as a PDF page adds a page object, an XObject
#   dictionary and a cross-reference entry: 2.5-3.5 KB observed, rounded
#   up to 4,000 bytes.
BUNDLE_OVERHEAD_BYTES: int = 15_000
ITEM_OVERHEAD_BYTES: int = 4_000

# Exact verification runs the real encoder, so it starts only once the
# running estimate passes this fraction of the effective limit. 0.85 keeps
# the number of encoder runs close to one per emitted chunk for typical
# photo books (2-6 MB per scan at "low").
VERIFICATION_THRESHOLD: float = 0.85

# Estimate used when an item reports no raw size (e.g. remote documents
# whose size is only known after download). Median scan size observed
# in photo-book exports.
UNKNOWN_RAW_SIZE_BYTES: int = 800_000

# Archival service ceiling: 15 MB per uploaded document. The range keeps
# user input within what the service and the encoder handle sensibly.
DEFAULT_MAX_CHUNK_MB: float = 15.0
MIN_MAX_CHUNK_MB: float = 5.0
MAX_MAX_CHUNK_MB: float = 50.0
DEFAULT_SAFETY_MARGIN_PERCENT: float = 1.0
MAX_SAFETY_MARGIN_PERCENT: float = 20.0

# Tick cadences (seconds).
OPTIMIZER_TICK_SECONDS: float = 0.1
PLANNER_TICK_SECONDS: float = 0.5
PLANNER_SETTLE_SECONDS: float = 2.0
SYNC_TICK_SECONDS: float = 1.0

# JPEG re-encode settings per compression level: (quality, max width px).
IMAGE_ENCODING: dict[str, tuple[int, int]] = {
    "low": (90, 2500),
    "medium": (70, 1600),
    "high": (50, 1024),
}

# A4 portrait width in PDF points; image pages are scaled to it.
A4_WIDTH_PT: float = 595.28
A4_HEIGHT_PT: float = 841.89
