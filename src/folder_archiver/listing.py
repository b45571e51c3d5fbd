# src/folder_archiver/listing.py

"""
Discovery of the objects that make up one archive.

The full listing is materialised: it is bounded by the size of the prefix and
holds only keys and sizes, never object bytes.
"""

import logging

from .clients import S3Client
from .config import MAX_LIST_PAGE_SIZE
from .exceptions import ListingError, ValidationError
from .schemas import ObjectDescriptor
from .security import archive_entry_name

logger = logging.getLogger(__name__)


def list_all(
    s3_client: S3Client,
    bucket: str,
    prefix: str,
    page_size: int = MAX_LIST_PAGE_SIZE,
) -> list[ObjectDescriptor]:
    """
    Lists every object under *prefix*, following continuation tokens until
    the store reports no further pages. Raises ListingError if any page fails.
    """
    objects: list[ObjectDescriptor] = []
    continuation_token: str | None = None
    page_count = 0

    while True:
        page = s3_client.list_objects_page(
            bucket, prefix, max_keys=page_size, continuation_token=continuation_token
        )
        page_count += 1
        objects.extend(page.objects)
        logger.debug(
            "Listed page",
            extra={"page": page_count, "page_objects": len(page.objects)},
        )

        if not page.is_truncated:
            break
        if not page.next_token:
            raise ListingError(
                bucket,
                prefix,
                "truncated page without a continuation token",
                error_code="S3_LISTING_NO_TOKEN",
                context={"page": page_count},
            )
        continuation_token = page.next_token

    logger.info(
        "Listing complete",
        extra={"bucket": bucket, "prefix": prefix, "pages": page_count, "objects": len(objects)},
    )
    return objects


def select_archive_candidates(
    objects: list[ObjectDescriptor],
) -> tuple[list[ObjectDescriptor], list[ObjectDescriptor]]:
    """
    Splits a listing into ``(candidates, skipped)``.

    Skipped: zero-size objects (including folder placeholders), keys whose
    basename is not a safe entry name, and later keys whose basename was
    already taken by an earlier key in listing order.
    """
    candidates: list[ObjectDescriptor] = []
    skipped: list[ObjectDescriptor] = []
    seen_names: dict[str, str] = {}

    for obj in objects:
        if obj.size == 0:
            skipped.append(obj)
            continue

        try:
            name = archive_entry_name(obj.key)
        except ValidationError as e:
            logger.warning(
                "Skipping object with an unusable entry name",
                extra={"key": obj.key, "error_code": e.error_code},
            )
            skipped.append(obj)
            continue

        if name in seen_names:
            logger.warning(
                "Skipping object whose entry name is already taken",
                extra={"key": obj.key, "entry_name": name, "kept_key": seen_names[name]},
            )
            skipped.append(obj)
            continue

        seen_names[name] = obj.key
        candidates.append(obj)

    return candidates, skipped
