"""Load signature sets from YAML (or JSON) files.

A signature set file looks like:

    signature_set: owasp-core
    signatures:
      - id: sqli-union-select
        name: SQL injection (UNION SELECT)
        category: injection
        severity: high
        weight: 80
        rules:
          - {field: any, operator: regex, value: "union\\s+(all\\s+)?select"}

File-level problems (unreadable, not YAML, no ``signatures`` list) raise
ConfigError: a broken rule file is fatal at startup.  Individual malformed
signatures are passed through untouched; the engine compiles them and
quarantines the ones that fail.
"""

from pathlib import Path

import yaml

from threatcore.errors import ConfigError

BUILTIN_DIR = Path(__file__).resolve().parent / "builtin"

_SUFFIXES = ("*.yml", "*.yaml", "*.json")


def load_signature_sets(paths) -> list[dict]:
    """Read every signature definition found under *paths* (files or directories)."""
    definitions = []
    for path in paths:
        path = Path(path)
        if path.is_dir():
            files = sorted(f for pattern in _SUFFIXES for f in path.glob(pattern))
        elif path.is_file():
            files = [path]
        else:
            raise ConfigError(f"Signature path not found: {path}")
        for f in files:
            definitions.extend(load_signature_file(f))
    return definitions


def load_builtin_signatures() -> list[dict]:
    return load_signature_sets([BUILTIN_DIR])


def load_signature_file(path: str | Path) -> list[dict]:
    path = Path(path)
    try:
        with open(path) as f:
            text = f.read()
    except OSError as e:
        raise ConfigError(f"{path.name}: cannot read signature set: {e}") from None
    return parse_signature_set(text, source=path.name, default_set=path.stem)


def parse_signature_set(text: str | bytes, source: str = "<import>",
                        default_set: str = "custom") -> list[dict]:
    """Parse a signature set document. JSON is valid YAML, so both work."""
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"{source}: invalid YAML: {e}") from None

    # A bare list is accepted as shorthand for {"signatures": [...]}.
    if isinstance(document, list):
        document = {"signatures": document}
    if not isinstance(document, dict):
        raise ConfigError(f"{source}: signature set must be a mapping")

    signatures = document.get("signatures")
    if not isinstance(signatures, list):
        raise ConfigError(f"{source}: missing required field 'signatures'")

    set_name = str(document.get("signature_set", default_set))
    definitions = []
    for definition in signatures:
        if isinstance(definition, dict):
            definition = dict(definition)
            definition.setdefault("signature_set", set_name)
        definitions.append(definition)
    return definitions


def dump_signature_set(signatures, signature_set: str) -> str:
    """Serialize compiled signatures back into a signature set document."""
    document = {
        "signature_set": signature_set,
        "signatures": [s.to_definition() for s in signatures],
    }
    return yaml.safe_dump(document, sort_keys=False)
