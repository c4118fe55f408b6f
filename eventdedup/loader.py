"""Load event records from JSON, YAML or a directory of Hugo markdown files."""

import json
from datetime import date, datetime
from pathlib import Path
from typing import Any

import frontmatter
import yaml
from slugify import slugify

from .logger import get_logger
from .models.event import EventRecord

logger = get_logger(__name__)

JSON_SUFFIXES = (".json",)
YAML_SUFFIXES = (".yaml", ".yml")

# Hugo front matter keys that map onto record fields
FRONT_MATTER_KEYS = {
    "eventName": "title",
    "eventURL": "website_url",
    "sourceId": "external_id",
    "lastCrawled": "updated_at",
}


def generate_record_id(data: dict) -> str:
    """Slug of title and date for records that carry no id."""
    title = data.get("title") or data.get("name") or data.get("eventName") or "event"
    when = data.get("start_time") or data.get("date") or ""
    if isinstance(when, (date, datetime)):
        when = when.isoformat()
    return slugify(f"{title} {str(when)[:10]}") or "event"


def _unique_id(candidate: str, seen: set[str]) -> str:
    event_id = candidate
    suffix = 2
    while event_id in seen:
        event_id = f"{candidate}-{suffix}"
        suffix += 1
    return event_id


def records_from_dicts(items: list[Any], origin: str = "input") -> list[EventRecord]:
    """
    Build records from raw dictionaries, generating missing ids.

    Entries that are not mappings or fail to parse are logged and skipped.
    """
    records = []
    seen: set[str] = set()

    for index, item in enumerate(items):
        if not isinstance(item, dict):
            logger.warning(f"Skipping entry {index} in {origin}: not a mapping")
            continue

        data = dict(item)
        if data.get("id"):
            if str(data["id"]) in seen:
                logger.warning(f"Duplicate id {data['id']} in {origin}; keeping both records")
            data["id"] = _unique_id(str(data["id"]), seen)
        else:
            data["id"] = _unique_id(generate_record_id(data), seen)

        try:
            record = EventRecord.from_dict(data)
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping entry {index} in {origin}: {e}")
            continue

        seen.add(record.id)
        records.append(record)

    return records


def _front_matter_dict(post: frontmatter.Post, md_file: Path) -> dict:
    data: dict[str, Any] = {}
    for key, value in post.metadata.items():
        data[FRONT_MATTER_KEYS.get(key, key)] = value

    categories = data.pop("categories", None)
    if categories and not data.get("category"):
        data["category"] = categories[0] if isinstance(categories, list) else categories

    locations = data.pop("locations", None)
    if locations and not data.get("venue_name") and not data.get("venue"):
        data["venue_name"] = locations[0] if isinstance(locations, list) else locations

    if not data.get("description") and post.content.strip():
        data["description"] = post.content.strip()

    data.setdefault("source", "hugo")
    data.setdefault("id", md_file.stem.removesuffix(".fr"))
    return data


def load_markdown_dir(content_dir: Path) -> list[EventRecord]:
    """Load every event markdown file under a Hugo content directory."""
    items = []
    for md_file in sorted(content_dir.rglob("*.md")):
        # Skip index files
        if md_file.name.startswith("_"):
            continue
        try:
            post = frontmatter.load(md_file)
        except (OSError, yaml.YAMLError, UnicodeDecodeError) as e:
            logger.warning(f"Failed to load {md_file}: {e}")
            continue
        items.append(_front_matter_dict(post, md_file))

    return records_from_dicts(items, str(content_dir))


def load_events(path: Path | str) -> list[EventRecord]:
    """
    Load event records from a file or directory.

    Args:
        path: JSON or YAML file holding a list of events (or a mapping with
            an ``events`` list), or a directory of markdown files with YAML
            front matter

    Returns:
        List of EventRecord

    Raises:
        FileNotFoundError: If the path does not exist
        ValueError: If the file type or content is not supported
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Events path not found: {path}")

    if path.is_dir():
        records = load_markdown_dir(path)
        logger.info(f"Loaded {len(records)} events from {path}")
        return records

    suffix = path.suffix.lower()
    with open(path, encoding="utf-8") as f:
        if suffix in JSON_SUFFIXES:
            try:
                raw = json.load(f)
            except json.JSONDecodeError as e:
                raise ValueError(f"Invalid JSON in {path}: {e}") from e
        elif suffix in YAML_SUFFIXES:
            try:
                raw = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        else:
            raise ValueError(f"Unsupported events file type: {path.suffix}")

    if isinstance(raw, dict) and "events" in raw:
        raw = raw["events"]
    if raw is None:
        raw = []
    if not isinstance(raw, list):
        raise ValueError(f"Expected a list of events in {path}")

    records = records_from_dicts(raw, str(path))
    logger.info(f"Loaded {len(records)} events from {path}")
    return records


def save_events(records: list[EventRecord], path: Path | str) -> None:
    """Write records as a JSON or YAML list, chosen by file suffix."""
    path = Path(path)
    data = [r.to_dict() for r in records]
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        if path.suffix.lower() in YAML_SUFFIXES:
            yaml.safe_dump(data, f, allow_unicode=True, sort_keys=False)
        else:
            json.dump(data, f, indent=2, ensure_ascii=False)
