"""
Tests for reading and editing the sops policy file.

Tests cover:
- Creating a policy file from scratch
- Idempotent recipient insertion
- Preserving the scalar-block and list recipient forms
- Leaving comments and unrelated rules untouched
- Backups, fallback rewrites and appends, strict mode
- Recipient lookup by path
"""
import os
import stat
import logging

import pytest
import yaml

from serverconf.conf import PRIVATE_CONFIG_REGEX
from serverconf.exceptions import InvalidConfigFormat, PolicyParseAmbiguous
from serverconf.vault.policy import (
    PolicyFileEditor,
    PolicyUpdate,
    load_policy,
    parse_policy,
    render_policy,
    split_recipients,
)

from conftest import make_public_key

SECRETS_RULE = "  - path_regex: secrets/.*\\.json$\n"


@pytest.fixture
def keys():
    return [make_public_key() for _ in range(4)]


@pytest.fixture
def policy_path(tmp_path):
    return tmp_path / "config" / ".sops.yaml"


def _recipients(path, regex=PRIVATE_CONFIG_REGEX):
    return load_policy(path).rule_for(regex).recipients


# --- Parsing ---

class TestParsing:
    """Tests for the parsed policy model."""

    def test_split_recipients_scalar(self):
        """Test comma and whitespace separated keys."""
        assert split_recipients("a, b,\nc  a") == ["a", "b", "c"]

    def test_split_recipients_list(self):
        """Test list form, including a comma inside an item."""
        assert split_recipients(["a", "b,c"]) == ["a", "b", "c"]

    def test_split_recipients_none(self):
        assert split_recipients(None) == []

    def test_split_recipients_bad_type(self):
        """Test that mappings are rejected."""
        with pytest.raises(InvalidConfigFormat):
            split_recipients({"a": 1})

    def test_both_forms_parse_the_same(self, keys):
        """Test that scalar-block and list forms yield the same recipients."""
        block = (
            "creation_rules:\n"
            "  - path_regex: x\n"
            "    age: >-\n"
            f"      {keys[0]},\n"
            f"      {keys[1]}\n"
        )
        listed = (
            "creation_rules:\n"
            "  - path_regex: x\n"
            "    age:\n"
            f"      - \"{keys[0]}\"\n"
            f"      - \"{keys[1]}\"\n"
        )
        assert parse_policy(block) == parse_policy(listed)
        assert parse_policy(block).rules[0].recipients == keys[:2]

    def test_invalid_structure(self):
        """Test that a non-list creation_rules is rejected."""
        with pytest.raises(InvalidConfigFormat):
            parse_policy("creation_rules: nope\n")

    def test_recipients_for_first_match(self, keys):
        """Test that the first matching rule wins."""
        policy = parse_policy(
            "creation_rules:\n"
            f"  - path_regex: {PRIVATE_CONFIG_REGEX}\n"
            f"    age: {keys[0]}\n"
            "  - path_regex: .*\n"
            f"    age: {keys[1]}\n"
        )
        assert policy.recipients_for("/srv/project/config/private.yml") == [keys[0]]
        assert policy.recipients_for("/srv/project/config/public.yml") == [keys[1]]

    def test_rule_without_regex_matches_everything(self, keys):
        policy = parse_policy(f"creation_rules:\n  - age: {keys[0]}\n")
        assert policy.recipients_for("anything.txt") == [keys[0]]

    def test_missing_file_has_no_rules(self, policy_path):
        assert load_policy(policy_path).rules == []


# --- Creating and idempotence ---

class TestEnsureRecipient:
    """Tests for PolicyFileEditor.ensure_recipient on simple files."""

    def test_creates_file(self, policy_path, keys):
        """Test that a missing file gets exactly one rule with one key."""
        editor = PolicyFileEditor(policy_path)
        assert editor.ensure_recipient(keys[0]) is PolicyUpdate.CREATED
        assert policy_path.read_text() == render_policy(PRIVATE_CONFIG_REGEX, [keys[0]])
        policy = load_policy(policy_path)
        assert len(policy.rules) == 1
        assert policy.rules[0].path_regex == PRIVATE_CONFIG_REGEX
        assert policy.rules[0].recipients == [keys[0]]

    def test_second_call_is_noop(self, policy_path, keys):
        """Test that re-adding a key leaves the file byte-identical."""
        editor = PolicyFileEditor(policy_path)
        editor.ensure_recipient(keys[0])
        before = policy_path.read_bytes()
        assert editor.ensure_recipient(keys[0]) is PolicyUpdate.UNCHANGED
        assert policy_path.read_bytes() == before
        assert editor.last_backup is None

    def test_two_keys(self, policy_path, keys):
        """Test that two keys both end up in the rule without duplicates."""
        editor = PolicyFileEditor(policy_path)
        editor.ensure_recipient(keys[0])
        assert editor.ensure_recipient(keys[1]) is PolicyUpdate.ADDED
        editor.ensure_recipient(keys[0])
        editor.ensure_recipient(keys[1])
        recipients = _recipients(policy_path)
        assert sorted(recipients) == sorted(keys[:2])
        assert len(recipients) == 2

    def test_deterministic_output(self, tmp_path, keys):
        """Test that the same sequence of keys gives the same bytes."""
        outputs = []
        for name in ("one", "two"):
            editor = PolicyFileEditor(tmp_path / name / ".sops.yaml")
            for key in keys:
                editor.ensure_recipient(key)
            outputs.append(editor.path.read_bytes())
        assert outputs[0] == outputs[1]

    def test_key_only_in_comment_is_added(self, policy_path, keys):
        """Test that membership is decided on the parsed rule, not the text."""
        policy_path.parent.mkdir(parents=True)
        policy_path.write_text(
            f"# retired: {keys[1]}\n" + render_policy(PRIVATE_CONFIG_REGEX, [keys[0]])
        )
        editor = PolicyFileEditor(policy_path)
        assert editor.ensure_recipient(keys[1]) is PolicyUpdate.ADDED
        assert keys[1] in _recipients(policy_path)

    def test_key_in_other_rule_is_added(self, policy_path, keys):
        """Test that a key granted elsewhere is still added to the target rule."""
        policy_path.parent.mkdir(parents=True)
        text = (
            "creation_rules:\n"
            + SECRETS_RULE
            + f"    age: {keys[1]}\n"
            + f"  - path_regex: {PRIVATE_CONFIG_REGEX}\n"
            + f"    age: {keys[0]}\n"
        )
        policy_path.write_text(text)
        editor = PolicyFileEditor(policy_path)
        assert editor.ensure_recipient(keys[1]) is PolicyUpdate.ADDED
        assert _recipients(policy_path) == [keys[0], keys[1]]
        assert policy_path.read_text().startswith(
            "creation_rules:\n" + SECRETS_RULE + f"    age: {keys[1]}\n"
        )

    def test_preserves_file_mode(self, policy_path, keys):
        """Test that the rewritten file keeps its permissions."""
        editor = PolicyFileEditor(policy_path)
        editor.ensure_recipient(keys[0])
        os.chmod(policy_path, 0o640)
        editor.ensure_recipient(keys[1])
        assert stat.S_IMODE(os.stat(policy_path).st_mode) == 0o640

    def test_backup_created(self, policy_path, keys):
        """Test that a modified file is backed up first."""
        editor = PolicyFileEditor(policy_path)
        editor.ensure_recipient(keys[0])
        original = policy_path.read_bytes()
        editor.ensure_recipient(keys[1])
        assert editor.last_backup is not None
        assert editor.last_backup.name.startswith(".sops.yaml.bak.")
        assert editor.last_backup.read_bytes() == original


# --- Form preservation ---

class TestFormPreservation:
    """Tests that edits keep the existing layout of the file."""

    def test_scalar_block(self, policy_path, keys):
        """Test insertion into a '>-' block next to comments and other rules."""
        text = (
            "# sops policy\n"
            "creation_rules:\n"
            "  # private settings\n"
            f"  - path_regex: {PRIVATE_CONFIG_REGEX}\n"
            "    age: >-\n"
            f"      {keys[0]},\n"
            f"      {keys[1]}\n"
            "\n"
            "  # application secrets\n"
            + SECRETS_RULE
            + "    age: >-\n"
            f"      {keys[2]}\n"
        )
        policy_path.parent.mkdir(parents=True)
        policy_path.write_text(text)

        editor = PolicyFileEditor(policy_path)
        assert editor.ensure_recipient(keys[3]) is PolicyUpdate.ADDED

        lines = policy_path.read_text().splitlines(keepends=True)
        original = text.splitlines(keepends=True)
        assert lines[:5] == original[:5]
        assert lines[5] == f"      {keys[3]},\n"
        assert lines[6:] == original[5:]
        assert _recipients(policy_path) == [keys[3], keys[0], keys[1]]
        assert load_policy(policy_path).rules[1].recipients == [keys[2]]

    def test_block_sequence(self, policy_path, keys):
        """Test that a block list stays a list and is kept sorted."""
        policy_path.parent.mkdir(parents=True)
        policy_path.write_text(
            "creation_rules:\n"
            f"  - path_regex: {PRIVATE_CONFIG_REGEX}\n"
            "    age:\n"
            f"      - \"{keys[0]}\"\n"
            f"      - \"{keys[1]}\"\n"
            "    encrypted_regex: ^(access_token|key_passphrase)$\n"
        )
        PolicyFileEditor(policy_path).ensure_recipient(keys[2])

        text = policy_path.read_text()
        expected = "".join(f'      - "{k}"\n' for k in sorted(keys[:3]))
        assert expected in text
        assert ">-" not in text
        assert text.endswith("    encrypted_regex: ^(access_token|key_passphrase)$\n")
        assert sorted(_recipients(policy_path)) == sorted(keys[:3])

    def test_flow_sequence(self, policy_path, keys):
        """Test that an inline list stays inline and is kept sorted."""
        policy_path.parent.mkdir(parents=True)
        policy_path.write_text(
            "creation_rules:\n"
            f"  - path_regex: {PRIVATE_CONFIG_REGEX}\n"
            f"    age: [\"{keys[0]}\"]\n"
        )
        PolicyFileEditor(policy_path).ensure_recipient(keys[1])

        entries = ", ".join(f'"{k}"' for k in sorted(keys[:2]))
        assert policy_path.read_text().endswith(f"    age: [{entries}]\n")

    def test_rule_without_recipient_field(self, policy_path, keys):
        """Test that a recipient field is added to a rule that lacks one."""
        policy_path.parent.mkdir(parents=True)
        policy_path.write_text(
            "creation_rules:\n"
            f"  - path_regex: {PRIVATE_CONFIG_REGEX}\n"
            "    unencrypted_suffix: _plain\n"
        )
        PolicyFileEditor(policy_path).ensure_recipient(keys[0])
        assert _recipients(policy_path) == [keys[0]]

    def test_missing_rule_is_appended(self, policy_path, keys):
        """Test that a new rule is added after the existing ones."""
        original = (
            "creation_rules:\n"
            + SECRETS_RULE
            + f"    age: {keys[1]}\n"
        )
        policy_path.parent.mkdir(parents=True)
        policy_path.write_text(original)

        assert PolicyFileEditor(policy_path).ensure_recipient(keys[0]) is PolicyUpdate.ADDED
        text = policy_path.read_text()
        assert text.startswith(original)
        policy = load_policy(policy_path)
        assert [r.path_regex for r in policy.rules] == [
            "secrets/.*\\.json$", PRIVATE_CONFIG_REGEX,
        ]
        assert policy.rules[1].recipients == [keys[0]]

    def test_missing_section_is_appended(self, policy_path, keys):
        """Test a policy file with other settings but no creation_rules."""
        policy_path.parent.mkdir(parents=True)
        policy_path.write_text("stores:\n  yaml:\n    indent: 2\n")
        PolicyFileEditor(policy_path).ensure_recipient(keys[0])
        text = policy_path.read_text()
        assert text.startswith("stores:\n  yaml:\n    indent: 2\n")
        assert _recipients(policy_path) == [keys[0]]


# --- Fallback ---

class TestFallback:
    """Tests for files that cannot be edited structurally."""

    BROKEN = "creation_rules:\n  - path_regex: [unclosed\n"

    def test_fallback_appends_and_warns(self, policy_path, keys, caplog):
        """Test that an unparseable file gets an appended rule and a warning."""
        policy_path.parent.mkdir(parents=True)
        policy_path.write_text(self.BROKEN)
        editor = PolicyFileEditor(policy_path)
        with caplog.at_level(logging.WARNING, logger="serverconf.vault"):
            assert editor.ensure_recipient(keys[0]) is PolicyUpdate.FALLBACK
        text = policy_path.read_text()
        assert text.startswith(self.BROKEN)
        assert keys[0] in text
        assert editor.last_backup.read_text() == self.BROKEN
        assert any("could not be edited" in r.getMessage() for r in caplog.records)

    def test_strict_raises(self, policy_path, keys):
        """Test that strict mode refuses to guess and leaves the file alone."""
        policy_path.parent.mkdir(parents=True)
        policy_path.write_text(self.BROKEN)
        editor = PolicyFileEditor(policy_path, strict=True)
        with pytest.raises(PolicyParseAmbiguous):
            editor.ensure_recipient(keys[0])
        assert policy_path.read_text() == self.BROKEN
        assert editor.last_backup is None

    def test_inline_rules_are_ambiguous(self, policy_path, keys):
        """Test that a flow-style creation_rules list is not edited in place."""
        policy_path.parent.mkdir(parents=True)
        policy_path.write_text(
            f"creation_rules: [{{path_regex: other, age: {keys[1]}}}]\n"
        )
        with pytest.raises(PolicyParseAmbiguous):
            PolicyFileEditor(policy_path, strict=True).ensure_recipient(keys[0])

    def test_unparseable_file_is_appended_once(self, policy_path, keys):
        """Test that a second call on an unparseable file changes nothing."""
        policy_path.parent.mkdir(parents=True)
        policy_path.write_text(self.BROKEN)
        editor = PolicyFileEditor(policy_path)
        assert editor.ensure_recipient(keys[0]) is PolicyUpdate.FALLBACK
        before = policy_path.read_bytes()
        assert editor.ensure_recipient(keys[0]) is PolicyUpdate.UNCHANGED
        assert policy_path.read_bytes() == before


class TestRewrite:
    """Tests for parseable files that cannot be edited line by line."""

    def _commented(self, keys):
        return (
            "creation_rules:\n"
            f"  - path_regex: {PRIVATE_CONFIG_REGEX}\n"
            "    age:\n"
            f'      - "{keys[1]}"\n'
            "      # backup laptop\n"
            f'      - "{keys[2]}"\n'
        )

    def test_comment_between_items(self, policy_path, keys, caplog):
        """Test that the key lands in the rule and a second call is a no-op."""
        policy_path.parent.mkdir(parents=True)
        original = self._commented(keys)
        policy_path.write_text(original)
        editor = PolicyFileEditor(policy_path)
        with caplog.at_level(logging.WARNING, logger="serverconf.vault"):
            assert editor.ensure_recipient(keys[0]) is PolicyUpdate.FALLBACK
        assert any("could not be edited" in r.getMessage() for r in caplog.records)
        assert editor.last_backup.read_text() == original

        policy = load_policy(policy_path)
        assert len(policy.rules) == 1
        assert sorted(policy.recipients_for("repo/config/private.yml")) == sorted(keys[:3])

        before = policy_path.read_bytes()
        assert editor.ensure_recipient(keys[0]) is PolicyUpdate.UNCHANGED
        assert policy_path.read_bytes() == before

    def test_flow_style_rules_stay_valid(self, policy_path, keys):
        """Test that a flow-style rules list is rewritten as parseable YAML."""
        policy_path.parent.mkdir(parents=True)
        policy_path.write_text(
            f"creation_rules: [{{path_regex: other, age: {keys[1]}}}]\n"
        )
        editor = PolicyFileEditor(policy_path)
        assert editor.ensure_recipient(keys[0]) is PolicyUpdate.FALLBACK

        document = yaml.safe_load(policy_path.read_text())
        assert len(document["creation_rules"]) == 2
        policy = load_policy(policy_path)
        assert policy.rule_for("other").recipients == [keys[1]]
        assert _recipients(policy_path) == [keys[0]]
        assert editor.ensure_recipient(keys[0]) is PolicyUpdate.UNCHANGED

    def test_scalar_field_keeps_existing_keys(self, policy_path, keys):
        """Test that a rewritten scalar recipient field keeps every key."""
        policy_path.parent.mkdir(parents=True)
        policy_path.write_text(
            f"creation_rules: [{{path_regex: '{PRIVATE_CONFIG_REGEX}', age: {keys[1]}}}]\n"
        )
        assert PolicyFileEditor(policy_path).ensure_recipient(keys[0]) is PolicyUpdate.FALLBACK
        assert _recipients(policy_path) == [keys[1], keys[0]]

    def test_strict_refuses_rewrite(self, policy_path, keys):
        """Test that strict mode leaves a commented list untouched."""
        policy_path.parent.mkdir(parents=True)
        original = self._commented(keys)
        policy_path.write_text(original)
        editor = PolicyFileEditor(policy_path, strict=True)
        with pytest.raises(PolicyParseAmbiguous):
            editor.ensure_recipient(keys[0])
        assert policy_path.read_text() == original
        assert editor.last_backup is None
