"""
Vault Policy: reading and idempotently editing the sops policy file.

The policy file (``config/.sops.yaml``) lists ``creation_rules``; each rule
pairs a ``path_regex`` with the age recipients allowed to decrypt matching
files. The recipient field comes in two equivalent on-disk forms::

    age: >-                         age:
      age1second,                     - "age1first"
      age1first                       - "age1second"

or a flow list ``age: ["age1first", "age1second"]``. Both are accepted on
read. Edits keep whatever form the target rule already uses and touch only
the lines of that rule's recipient field, so comments and every other rule
survive byte for byte. Writes go through a temp file and ``os.replace``.

A file that parses but cannot be edited line by line (flow-style rules,
comments between list items, ...) is rewritten from its parsed structure
instead; that keeps it valid YAML but drops comments and layout. A file
that does not parse at all gets a best-effort rule appended to its text.
"""
import os
import re
import shutil
import logging
import tempfile
from enum import Enum
from pathlib import Path, PurePath
from datetime import datetime
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field

from ..conf import PRIVATE_CONFIG_REGEX
from ..exceptions import InvalidConfigFormat, PolicyParseAmbiguous

logger = logging.getLogger("serverconf.vault")

RULES_KEY = "creation_rules"
RECIPIENTS_KEY = "age"
PATTERN_KEY = "path_regex"

_RULES_HEADER = re.compile(r"^creation_rules\s*:\s*(?:#.*)?$")
_ITEM = re.compile(r"^(?P<indent> *)-(?:\s+(?P<rest>.*))?$")
_KEY = re.compile(r"^(?P<key>[A-Za-z_][\w-]*)\s*:(?:\s+(?P<value>.*))?$")
_SPLIT = re.compile(r"[,\s]+")


class PolicyUpdate(str, Enum):
    """Outcome of ``PolicyFileEditor.ensure_recipient``."""

    CREATED = "created"
    UNCHANGED = "unchanged"
    ADDED = "added"
    FALLBACK = "fallback"


# ---------------------------------------------------------------------------
# Parsed model
# ---------------------------------------------------------------------------

def split_recipients(value: Any) -> list[str]:
    """Normalize a recipient field (scalar block or list) to a key list.

    Duplicates are dropped, first occurrence wins.

    Raises:
        InvalidConfigFormat: If ``value`` is neither a string nor a list of strings.
    """
    if value is None:
        return []
    if isinstance(value, str):
        items = _SPLIT.split(value)
    elif isinstance(value, list) and all(isinstance(v, str) for v in value):
        items = [part for v in value for part in _SPLIT.split(v)]
    else:
        raise InvalidConfigFormat(
            f"Unsupported recipient field type: {type(value).__name__}"
        )
    keys: list[str] = []
    for item in items:
        if item and item not in keys:
            keys.append(item)
    return keys


class PolicyRule(BaseModel):
    """A single creation rule."""

    path_regex: Optional[str] = None
    recipients: list[str] = Field(default_factory=list)

    def matches(self, path) -> bool:
        # sops applies rules without path_regex to every file
        if self.path_regex is None:
            return True
        return re.search(self.path_regex, PurePath(path).as_posix()) is not None


class PolicyFile(BaseModel):
    """Ordered creation rules of a policy file."""

    rules: list[PolicyRule] = Field(default_factory=list)

    def rule_for(self, path_regex: str) -> Optional[PolicyRule]:
        """Return the first rule declared for exactly ``path_regex``."""
        return next((r for r in self.rules if r.path_regex == path_regex), None)

    def index_of(self, path_regex: str) -> Optional[int]:
        return next(
            (i for i, r in enumerate(self.rules) if r.path_regex == path_regex),
            None,
        )

    def recipients_for(self, path) -> list[str]:
        """Return the recipients of the first rule matching ``path``."""
        for rule in self.rules:
            if rule.matches(path):
                return list(rule.recipients)
        return []


def parse_policy(text: str) -> PolicyFile:
    """Parse policy file text.

    Raises:
        InvalidConfigFormat: On YAML errors or an unexpected structure.
    """
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as err:
        raise InvalidConfigFormat(f"Invalid policy file YAML: {err}") from err
    if document is None:
        return PolicyFile()
    if not isinstance(document, dict):
        raise InvalidConfigFormat("Policy file must be a mapping")
    raw_rules = document.get(RULES_KEY)
    if raw_rules is None:
        return PolicyFile()
    if not isinstance(raw_rules, list):
        raise InvalidConfigFormat(f"'{RULES_KEY}' must be a list")
    rules = []
    for raw in raw_rules:
        if not isinstance(raw, dict):
            raise InvalidConfigFormat(f"Each of '{RULES_KEY}' must be a mapping")
        pattern = raw.get(PATTERN_KEY)
        if pattern is not None and not isinstance(pattern, str):
            raise InvalidConfigFormat(f"'{PATTERN_KEY}' must be a string")
        rules.append(
            PolicyRule(
                path_regex=pattern,
                recipients=split_recipients(raw.get(RECIPIENTS_KEY)),
            )
        )
    return PolicyFile(rules=rules)


def load_policy(path: Path) -> PolicyFile:
    """Load a policy file; a missing file has no rules."""
    path = Path(path)
    if not path.is_file():
        return PolicyFile()
    return parse_policy(path.read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# Text rendering
# ---------------------------------------------------------------------------

def _scalar(value: str) -> str:
    """Render ``value`` as a plain YAML scalar when that round-trips."""
    try:
        if yaml.safe_load(f"k: {value}") == {"k": value}:
            return value
    except yaml.YAMLError:
        pass
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def render_rule(path_regex: str, keys: list[str], indent: int = 2) -> list[str]:
    """Render a rule in the canonical scalar-block form."""
    pad = " " * indent
    lines = [
        f"{pad}- {PATTERN_KEY}: {_scalar(path_regex)}\n",
        f"{pad}  {RECIPIENTS_KEY}: >-\n",
    ]
    for i, key in enumerate(keys):
        comma = "," if i < len(keys) - 1 else ""
        lines.append(f"{pad}    {key}{comma}\n")
    return lines


def render_policy(path_regex: str, keys: list[str]) -> str:
    """Render a complete policy file with one rule."""
    return "".join([f"{RULES_KEY}:\n"] + render_rule(path_regex, keys))


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip(" "))


def _is_filler(line: str) -> bool:
    stripped = line.strip()
    return not stripped or stripped.startswith("#")


class _RuleSpan:
    """Line range ``[start, end)`` of one creation rule in the file text."""

    def __init__(self, start: int, dash_indent: int, key_indent: int):
        self.start = start
        self.end = start + 1
        self.dash_indent = dash_indent
        self.key_indent = key_indent


# ---------------------------------------------------------------------------
# Editor
# ---------------------------------------------------------------------------

class PolicyFileEditor:
    """Ensure a public key is a recipient of one policy rule.

    Args:
        path: Policy file location.
        path_regex: Pattern of the rule to edit.
        strict: Raise ``PolicyParseAmbiguous`` instead of rewriting a file
            that cannot be edited in place or appending to one that does
            not parse.
    """

    def __init__(
        self,
        path: Path,
        path_regex: str = PRIVATE_CONFIG_REGEX,
        strict: bool = False,
    ):
        self.path = Path(path)
        self.path_regex = path_regex
        self.strict = strict
        self.last_backup: Optional[Path] = None

    def load(self) -> PolicyFile:
        return load_policy(self.path)

    def ensure_recipient(self, public_key: str) -> PolicyUpdate:
        """Add ``public_key`` to the rule for ``path_regex`` if missing.

        Returns:
            What happened to the file; calling twice with the same key
            returns ``UNCHANGED`` the second time and leaves the file
            byte-identical.
        """
        if not self.path.exists():
            logger.info("Creating new policy file %s", self.path)
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._write(render_policy(self.path_regex, [public_key]))
            return PolicyUpdate.CREATED

        text = self.path.read_text(encoding="utf-8")
        try:
            policy = parse_policy(text)
        except InvalidConfigFormat as err:
            return self._append(text, public_key, str(err))

        rule = policy.rule_for(self.path_regex)
        if rule is not None and public_key in rule.recipients:
            logger.info("Public key already exists in policy file")
            return PolicyUpdate.UNCHANGED

        try:
            updated = self._edit(text, policy, public_key)
        except PolicyParseAmbiguous as err:
            return self._rewrite(text, policy, public_key, str(err))

        self._backup()
        self._write(updated)
        logger.info("Policy file %s updated with public key", self.path)
        return PolicyUpdate.ADDED

    # -- editing -------------------------------------------------------------

    def _edit(self, text: str, policy: PolicyFile, key: str) -> str:
        lines = text.splitlines(keepends=True)
        if lines and not lines[-1].endswith("\n"):
            lines[-1] += "\n"

        header = next(
            (i for i, line in enumerate(lines) if _RULES_HEADER.match(line.rstrip("\n"))),
            None,
        )
        if header is None:
            if any(line.startswith(f"{RULES_KEY}:") for line in lines):
                raise PolicyParseAmbiguous(f"inline '{RULES_KEY}' value")
            # no creation_rules yet: add the whole section at the end
            lines.append(f"{RULES_KEY}:\n")
            lines.extend(render_rule(self.path_regex, [key]))
        else:
            spans = self._rule_spans(lines, header)
            if len(spans) != len(policy.rules):
                raise PolicyParseAmbiguous(
                    f"found {len(spans)} rule(s) in text but "
                    f"{len(policy.rules)} when parsed"
                )
            index = policy.index_of(self.path_regex)
            if index is None:
                at = spans[-1].end if spans else header + 1
                indent = spans[0].dash_indent if spans else 2
                lines[at:at] = render_rule(self.path_regex, [key], indent)
            else:
                current = policy.rules[index].recipients
                lines = self._edit_rule(lines, spans[index], current, key)

        updated = "".join(lines)
        self._verify(policy, updated, key)
        return updated

    def _rule_spans(self, lines: list[str], header: int) -> list[_RuleSpan]:
        spans: list[_RuleSpan] = []
        dash_indent = None
        for i in range(header + 1, len(lines)):
            raw = lines[i].rstrip("\n")
            if _is_filler(raw):
                continue
            indent = _indent(raw)
            item = _ITEM.match(raw)
            if dash_indent is None:
                if item is None:
                    break
                dash_indent = indent
            if item is not None and indent == dash_indent:
                rest = item.group("rest")
                key_indent = len(raw) - len(rest) if rest else dash_indent + 2
                spans.append(_RuleSpan(i, dash_indent, key_indent))
            elif indent > dash_indent and spans:
                spans[-1].end = i + 1
            else:
                break
        return spans

    def _rule_keys(self, lines: list[str], span: _RuleSpan) -> list[tuple[str, int]]:
        """Return ``(key, line index)`` for the top-level keys of a rule."""
        keys = []
        first = _ITEM.match(lines[span.start].rstrip("\n")).group("rest") or ""
        match = _KEY.match(first)
        if match:
            keys.append((match.group("key"), span.start))
        for i in range(span.start + 1, span.end):
            raw = lines[i].rstrip("\n")
            if _is_filler(raw) or _indent(raw) != span.key_indent:
                continue
            match = _KEY.match(raw.strip())
            if match:
                keys.append((match.group("key"), i))
        return keys

    def _edit_rule(
        self,
        lines: list[str],
        span: _RuleSpan,
        current: list[str],
        key: str,
    ) -> list[str]:
        keys = self._rule_keys(lines, span)
        positions = [i for _, i in keys]
        age_at = next((i for name, i in keys if name == RECIPIENTS_KEY), None)

        if age_at is None:
            logger.info("Rule has no recipient field, adding one")
            pad = " " * span.key_indent
            lines[span.end:span.end] = [
                f"{pad}{RECIPIENTS_KEY}: >-\n",
                f"{pad}  {key}\n",
            ]
            return lines

        later = [i for i in positions if i > age_at]
        region_end = later[0] if later else span.end
        raw = lines[age_at].rstrip("\n")
        head = raw[:raw.index(RECIPIENTS_KEY)]
        value = raw[raw.index(RECIPIENTS_KEY) + len(RECIPIENTS_KEY):].lstrip()[1:].strip()

        if value[:1] in (">", "|"):
            logger.info("Adding key to existing config (block scalar format)")
            body = [
                j for j in range(age_at + 1, region_end)
                if lines[j].strip()
            ]
            item_indent = _indent(lines[body[0]]) if body else span.key_indent + 2
            comma = "," if current else ""
            lines.insert(age_at + 1, f"{' ' * item_indent}{key}{comma}\n")
            return lines

        if value.startswith("["):
            close = value.find("]")
            if close < 0:
                raise PolicyParseAmbiguous("multi-line flow recipient list")
            logger.info("Adding key to existing config (array format)")
            entries = ", ".join(f'"{k}"' for k in sorted(set(current) | {key}))
            lines[age_at] = f"{head}{RECIPIENTS_KEY}: [{entries}]{value[close + 1:]}\n"
            return lines

        if value and not value.startswith("#"):
            logger.info("Adding key to existing inline recipient list")
            lines[age_at] = f"{head}{RECIPIENTS_KEY}: {','.join(current + [key])}\n"
            return lines

        following = [
            j for j in range(age_at + 1, region_end)
            if not _is_filler(lines[j])
        ]
        items = [j for j in following if _ITEM.match(lines[j].rstrip("\n"))]
        if following and items != following:
            raise PolicyParseAmbiguous("unrecognized recipient field layout")
        if not items:
            # empty recipient field
            lines[age_at] = f"{head}{RECIPIENTS_KEY}: >-\n"
            lines.insert(age_at + 1, f"{' ' * (span.key_indent + 2)}{key}\n")
            return lines
        if len(items) != len(current) or items != list(range(items[0], items[-1] + 1)):
            raise PolicyParseAmbiguous("recipient list items are not one per line")

        logger.info("Adding key to existing config (array format)")
        pad = " " * _indent(lines[items[0]])
        entries = [f'{pad}- "{k}"\n' for k in sorted(set(current) | {key})]
        lines[items[0]:items[-1] + 1] = entries
        return lines

    def _verify(self, before: PolicyFile, updated: str, key: str) -> None:
        try:
            after = parse_policy(updated)
        except InvalidConfigFormat as err:
            raise PolicyParseAmbiguous(f"edit produced invalid YAML: {err}") from None
        index = after.index_of(self.path_regex)
        if index is None or key not in after.rules[index].recipients:
            raise PolicyParseAmbiguous("edit did not add the key to the rule")
        old = before.rule_for(self.path_regex)
        if old is not None and not set(old.recipients) <= set(after.rules[index].recipients):
            raise PolicyParseAmbiguous("edit dropped existing recipients")
        others_before = [r for r in before.rules if r.path_regex != self.path_regex]
        others_after = [r for r in after.rules if r.path_regex != self.path_regex]
        if others_before != others_after:
            raise PolicyParseAmbiguous("edit changed other rules")

    def _refuse(self, reason: str) -> None:
        if self.strict:
            raise PolicyParseAmbiguous(
                f"Cannot edit policy file {self.path}: {reason}"
            )

    def _rewrite(
        self,
        text: str,
        policy: PolicyFile,
        key: str,
        reason: str,
    ) -> PolicyUpdate:
        """Re-serialize a parseable file with ``key`` added to the target rule."""
        self._refuse(reason)
        document = yaml.safe_load(text) or {}
        if document.get(RULES_KEY) is None:
            document[RULES_KEY] = []
        rule = next(
            (r for r in document[RULES_KEY] if r.get(PATTERN_KEY) == self.path_regex),
            None,
        )
        if rule is None:
            document[RULES_KEY].append({PATTERN_KEY: self.path_regex, RECIPIENTS_KEY: key})
        else:
            current = split_recipients(rule.get(RECIPIENTS_KEY))
            if isinstance(rule.get(RECIPIENTS_KEY), list):
                rule[RECIPIENTS_KEY] = sorted(set(current) | {key})
            else:
                rule[RECIPIENTS_KEY] = ",".join(current + [key])
        updated = yaml.safe_dump(document, default_flow_style=False, sort_keys=False)
        self._verify(policy, updated, key)

        logger.warning(
            "Policy file %s could not be edited in place (%s); rewrote it "
            "without comments or original layout. Review the file manually.",
            self.path, reason,
        )
        self._backup()
        self._write(updated)
        return PolicyUpdate.FALLBACK

    def _append(self, text: str, key: str, reason: str) -> PolicyUpdate:
        """Append a rule to a file that does not parse as a policy."""
        self._refuse(reason)
        if re.search(rf"(?<![\w-]){re.escape(key)}(?![\w-])", text):
            # cannot be checked structurally; do not append twice
            logger.warning(
                "Policy file %s could not be parsed (%s) and already mentions "
                "the key. Review the file manually.",
                self.path, reason,
            )
            return PolicyUpdate.UNCHANGED
        logger.warning(
            "Policy file %s could not be edited structurally (%s); "
            "appending a new rule. Review the file manually.",
            self.path, reason,
        )
        if text and not text.endswith("\n"):
            text += "\n"
        self._backup()
        self._write(text + "".join(render_rule(self.path_regex, [key])))
        return PolicyUpdate.FALLBACK

    # -- file handling -------------------------------------------------------

    def _backup(self) -> Path:
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        backup = self.path.with_name(f"{self.path.name}.bak.{stamp}")
        shutil.copy2(self.path, backup)
        self.last_backup = backup
        logger.info("Backup created at %s", backup)
        return backup

    def _write(self, content: str) -> None:
        mode = self.path.stat().st_mode & 0o777 if self.path.exists() else 0o644
        fd, tmp = tempfile.mkstemp(
            dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
            os.chmod(tmp, mode)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
