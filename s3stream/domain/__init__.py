"""
Domain layer package: encryption modes, conditional-write policy, error
taxonomy and failure classification.
"""

from typing import Final

# S3 limits for multipart uploads.
MIN_PART_SIZE_BYTES: Final[int] = 5 * 1024 * 1024
MAX_PART_SIZE_BYTES: Final[int] = 5 * 1024 * 1024 * 1024
MAX_PART_NUMBER: Final[int] = 10000
