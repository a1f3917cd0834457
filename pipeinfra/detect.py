import json
import os

import yaml


def _looks_like_template(doc) -> bool:
    if not isinstance(doc, dict):
        return False
    resources = doc.get("resources")
    if not isinstance(resources, dict) or not resources:
        return False
    return all(isinstance(v, dict) and "kind" in v for v in resources.values())


def detect_format(filepath: str) -> str:
    """
    Return 'hcl', 'yaml', 'json', or 'unknown'.
    """
    _, ext = os.path.splitext(filepath.lower())

    if ext in (".tf", ".hcl"):
        return "hcl"

    if ext == ".json":
        try:
            with open(filepath) as fh:
                data = json.load(fh)
        except (OSError, ValueError):
            return "unknown"
        return "json" if _looks_like_template(data) else "unknown"

    if ext in (".yaml", ".yml"):
        try:
            with open(filepath) as fh:
                data = yaml.safe_load(fh)
        except (OSError, yaml.YAMLError):
            return "unknown"
        return "yaml" if _looks_like_template(data) else "unknown"

    return "unknown"
