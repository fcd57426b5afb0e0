import os
import csv
import logging
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

logger = logging.getLogger(__name__)


# ---------------------------------------------------------
# INPUT: DATA EXTRACT CSV FILES
# ---------------------------------------------------------

class InputSource(NamedTuple):
    """A Data Extract CSV and the columns holding project id and document urn."""
    name: str
    project_column: str
    urn_column: str


class IdentifierRecord(NamedTuple):
    project_id: str
    document_urn: str


DEFAULT_SOURCES: List[InputSource] = [
    InputSource("issues_issues.csv", "bim360_project_id", "linked_document_urn"),
    InputSource("reviews_review_documents.csv", "bim360_project_id", "lineage_urn"),
]


def read_csv_rows(path: str) -> List[Dict[str, str]]:
    """Parse a CSV with a header row, dropping trailing blank/sentinel rows."""
    # utf-8-sig: Data Extract exports may start with a BOM
    with open(path, "r", encoding="utf-8-sig", newline="") as f:
        rows = list(csv.DictReader(f))

    while rows and not any((value or "").strip() for value in rows[-1].values() if isinstance(value, str)):
        rows.pop()
    return rows


def rows_to_records(rows: Iterable[Dict[str, str]], source: InputSource) -> List[IdentifierRecord]:
    """Map rows to identifier records. Missing columns become empty strings."""
    return [
        IdentifierRecord(
            project_id=(row.get(source.project_column) or "").strip(),
            document_urn=(row.get(source.urn_column) or "").strip(),
        )
        for row in rows
    ]


def group_by(records: Iterable[IdentifierRecord], unique_only: bool = True) -> Dict[str, List[str]]:
    """
    Groups document urns under their project id, keeping first-seen order.
    Empty urns are never inserted; the project key is still created.
    """
    groups: Dict[str, List[str]] = {}
    for record in records:
        urns = groups.setdefault(record.project_id, [])
        if record.document_urn and (not unique_only or record.document_urn not in urns):
            urns.append(record.document_urn)
    return groups


def merge_groups(target: Dict[str, List[str]], other: Dict[str, List[str]]) -> Dict[str, List[str]]:
    """Merges `other` into `target` in place, skipping urns already present."""
    for project_id, urns in other.items():
        existing = target.setdefault(project_id, [])
        for urn in urns:
            if urn and urn not in existing:
                existing.append(urn)
    return target


def collect_document_urns(
    sources: Optional[List[InputSource]] = None,
    base_dir: str = "."
) -> Dict[str, List[str]]:
    """Reads every source and returns the project -> unique urns grouping."""
    sources = DEFAULT_SOURCES if sources is None else sources
    grouped: Dict[str, List[str]] = {}
    total = 0

    for source in sources:
        path = os.path.join(base_dir, source.name)
        rows = read_csv_rows(path)
        records = rows_to_records(rows, source)
        total += len(records)
        logger.debug(f"Read {len(records)} rows from {source.name}")
        merge_groups(grouped, group_by(records, unique_only=True))

    logger.info(f"Collected {total} URNs from Data Extract")
    return grouped


# ---------------------------------------------------------
# OUTPUT: ENRICHED CSV FILES
# ---------------------------------------------------------

DOCUMENTS_FILE = "documents_documents.csv"
CUSTOM_ATTRIBUTES_FILE = "documents_custom_attributes.csv"

DOCUMENT_COLUMNS = [
    "id",
    "bim360_project_id",
    "name",
    "path",
    "version_number",
    "created_at",
    "created_by",
    "created_by_name",
    "updated_at",
    "updated_by",
    "updated_by_name",
    "storage_size",
    "hidden",
    "type",
    "versioned_urn",
    "web_link",
    "parent_id",
]

CUSTOM_ATTRIBUTE_COLUMNS = [
    "document_id",
    "bim360_project_id",
    "attribute_id",
    "attribute_type",
    "attribute_name",
    "attribute_value",
]


def _dig(obj: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def document_to_row(document: Dict[str, Any]) -> Dict[str, Any]:
    """Flattens an enriched document into the documents_documents.csv columns."""
    attributes = document.get("attributes") or {}
    return {
        "id": document.get("id"),
        "bim360_project_id": document.get("project_id"),
        "name": attributes.get("displayName"),
        "path": attributes.get("pathInProject"),
        "version_number": document.get("versionNumber"),
        "created_at": attributes.get("createTime"),
        "created_by": attributes.get("createUserId"),
        "created_by_name": attributes.get("createUserName"),
        "updated_at": attributes.get("lastModifiedTime"),
        "updated_by": attributes.get("lastModifiedUserId"),
        "updated_by_name": attributes.get("lastModifiedUserName"),
        "storage_size": document.get("storageSize"),
        "hidden": attributes.get("hidden"),
        "type": _dig(attributes, "extension", "type"),
        "versioned_urn": document.get("versionUrn"),
        "web_link": _dig(document, "links", "webView", "href"),
        "parent_id": _dig(document, "relationships", "parent", "data", "id"),
    }


def custom_attribute_rows(documents: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """One row per custom attribute across all documents."""
    rows = []
    for document in documents:
        for attribute in document.get("customAttributes") or []:
            if not isinstance(attribute, dict):
                continue
            rows.append({
                "document_id": document.get("id"),
                "bim360_project_id": document.get("project_id"),
                "attribute_id": attribute.get("id"),
                "attribute_type": attribute.get("type"),
                "attribute_name": attribute.get("name"),
                "attribute_value": attribute.get("value"),
            })
    return rows


def write_csv(path: str, columns: List[str], rows: Iterable[Dict[str, Any]]) -> int:
    """Writes rows with a BOM and CRLF line endings. Returns the row count."""
    count = 0
    with open(path, "w", encoding="utf-8-sig", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=columns, lineterminator="\r\n", extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow({k: ("" if v is None else v) for k, v in row.items()})
            count += 1
    return count


def write_documents_csv(documents: List[Dict[str, Any]], output_dir: str = ".") -> str:
    path = os.path.join(output_dir, DOCUMENTS_FILE)
    count = write_csv(path, DOCUMENT_COLUMNS, (document_to_row(d) for d in documents))
    logger.info(f"Wrote {count} documents to {path}")
    return path


def write_custom_attributes_csv(documents: List[Dict[str, Any]], output_dir: str = ".") -> str:
    path = os.path.join(output_dir, CUSTOM_ATTRIBUTES_FILE)
    count = write_csv(path, CUSTOM_ATTRIBUTE_COLUMNS, custom_attribute_rows(documents))
    logger.info(f"Wrote {count} custom attributes to {path}")
    return path
