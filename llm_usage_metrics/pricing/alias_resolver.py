"""
Model alias resolution against a rate table.

Maps inconsistently named model identifiers onto rate-table keys.

Resolution Order:
1. Static alias table (exact or canonicalized spelling)
2. Direct match, with or without a ``provider/`` prefix
3. Provider-prefixed key (``.../<model>`` or ``...<prefix>.<model>``)
4. Prefix match at a ``-``, ``:`` or ``@`` boundary
5. Fuzzy match gated by numeric-token compatibility
6. The unresolved normalized name
"""

import re
from dataclasses import dataclass, field
from functools import lru_cache
from importlib import resources
from typing import Any, Dict, Iterable, List, Optional

import yaml

_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9]")
_DIGIT_RUN = re.compile(r"\d+")
_PREFIX_BOUNDARIES = ("-", ":", "@")

ALIAS_TABLE_RESOURCE = "model_aliases.yaml"


def normalize_model_key(value: str) -> str:
    return value.strip().lower()


def strip_provider_prefix(model: str) -> str:
    """Drop everything up to the last ``/``."""
    return model.rsplit("/", 1)[-1]


def canonicalize_for_fuzzy(value: str) -> str:
    return _NON_ALPHANUMERIC.sub("", value)


def extract_numeric_tokens(value: str) -> List[str]:
    return _DIGIT_RUN.findall(value)


def are_numeric_signatures_compatible(left: str, right: str) -> bool:
    """Whether two names can refer to the same model version.

    Compatible when either side has no digits, when both carry the same
    digit-token sequence, or when one side's single token equals the other
    side's tokens concatenated (``45`` vs ``4``, ``5``).
    """
    left_tokens = extract_numeric_tokens(left)
    right_tokens = extract_numeric_tokens(right)

    if not left_tokens or not right_tokens:
        return True

    if left_tokens == right_tokens:
        return True

    if len(left_tokens) == 1 and len(right_tokens) > 1 and "".join(right_tokens) == left_tokens[0]:
        return True

    if len(right_tokens) == 1 and len(left_tokens) > 1 and "".join(left_tokens) == right_tokens[0]:
        return True

    return False


def levenshtein_distance(left: str, right: str) -> int:
    """Classic edit distance with unit insert/delete/substitute costs."""
    if len(left) < len(right):
        left, right = right, left

    previous_row = list(range(len(right) + 1))
    for row_index, left_char in enumerate(left, start=1):
        current_row = [row_index]
        for column_index, right_char in enumerate(right, start=1):
            substitution_cost = 0 if left_char == right_char else 1
            current_row.append(min(
                previous_row[column_index] + 1,
                current_row[column_index - 1] + 1,
                previous_row[column_index - 1] + substitution_cost,
            ))
        previous_row = current_row
    return previous_row[-1]


def max_fuzzy_distance(candidate: str) -> int:
    return max(2, int(len(candidate) * 0.2))


def is_prefix_model_match(candidate: str, model_name: str) -> bool:
    """Whether ``candidate`` begins with ``model_name`` at a name boundary."""
    if not candidate.startswith(model_name):
        return False
    if len(candidate) == len(model_name):
        return True
    return candidate[len(model_name)] in _PREFIX_BOUNDARIES


@dataclass(frozen=True)
class AliasTable:
    """Static spelling -> canonical model map plus preferred pricing keys."""
    aliases: Dict[str, str] = field(default_factory=dict)
    canonicalized_aliases: Dict[str, str] = field(default_factory=dict)
    preferred_pricing_keys: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Any) -> "AliasTable":
        """Build an alias table from a decoded YAML document.

        Raises:
            ValueError: If the document structure is invalid
        """
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("Alias table must be a mapping")

        unknown_keys = set(data.keys()) - {"aliases", "preferred_pricing_keys"}
        if unknown_keys:
            raise ValueError(f"Unknown alias table keys: {unknown_keys}")

        raw_aliases = data.get("aliases") or {}
        raw_preferred = data.get("preferred_pricing_keys") or {}
        if not isinstance(raw_aliases, dict):
            raise ValueError("'aliases' must be a dictionary")
        if not isinstance(raw_preferred, dict):
            raise ValueError("'preferred_pricing_keys' must be a dictionary")

        aliases = {}
        canonicalized_aliases = {}
        for alias, canonical_model in raw_aliases.items():
            if not isinstance(alias, str) or not isinstance(canonical_model, str):
                continue
            normalized_alias = normalize_model_key(alias)
            normalized_canonical = normalize_model_key(canonical_model)
            aliases[normalized_alias] = normalized_canonical
            canonicalized_aliases[canonicalize_for_fuzzy(normalized_alias)] = normalized_canonical

        preferred_pricing_keys = {
            normalize_model_key(canonical_model): normalize_model_key(pricing_key)
            for canonical_model, pricing_key in raw_preferred.items()
            if isinstance(canonical_model, str) and isinstance(pricing_key, str)
        }

        return cls(
            aliases=aliases,
            canonicalized_aliases=canonicalized_aliases,
            preferred_pricing_keys=preferred_pricing_keys,
        )

    def canonical_model_for(self, normalized_model: str) -> Optional[str]:
        stripped_model = strip_provider_prefix(normalized_model)

        direct = self.aliases.get(normalized_model) or self.aliases.get(stripped_model)
        if direct:
            return direct

        return (
            self.canonicalized_aliases.get(canonicalize_for_fuzzy(normalized_model))
            or self.canonicalized_aliases.get(canonicalize_for_fuzzy(stripped_model))
        )


@lru_cache(maxsize=1)
def load_default_alias_table() -> AliasTable:
    """Load (once) the alias table shipped with the package."""
    text = resources.files(__package__).joinpath(ALIAS_TABLE_RESOURCE).read_text(encoding="utf-8")
    return AliasTable.from_mapping(yaml.safe_load(text))


class ModelAliasResolver:
    """Resolves model names onto the keys of one rate table.

    Results are memoized per instance, keyed by the normalized input, and
    the memo is cleared whenever the rate-table keys change.
    """

    def __init__(self, alias_table: Optional[AliasTable] = None, rate_table_keys: Iterable[str] = ()):
        self._alias_table = alias_table if alias_table is not None else load_default_alias_table()
        self._keys: List[str] = []
        self._key_set = frozenset()
        self._memo: Dict[str, str] = {}
        self.set_rate_table_keys(rate_table_keys)

    def set_rate_table_keys(self, keys: Iterable[str]) -> None:
        self._keys = sorted(set(keys))
        self._key_set = frozenset(self._keys)
        self._memo.clear()

    def resolve(self, model: str) -> str:
        """Resolve a model name to a rate-table key.

        Args:
            model: Model identifier as reported by a source

        Returns:
            The matching rate-table key, or the normalized input when nothing
            matches
        """
        normalized_model = normalize_model_key(model)
        cached = self._memo.get(normalized_model)
        if cached is not None:
            return cached

        resolved = (
            self._resolve_mapped_alias(normalized_model)
            or self._resolve_direct(normalized_model)
            or self._resolve_provider_prefixed(normalized_model)
            or self._resolve_prefix(normalized_model)
            or self._resolve_fuzzy(normalized_model)
            or normalized_model
        )
        self._memo[normalized_model] = resolved
        return resolved

    def _resolve_mapped_alias(self, normalized_model: str) -> Optional[str]:
        canonical_model = self._alias_table.canonical_model_for(normalized_model)
        if not canonical_model:
            return None

        preferred_key = self._alias_table.preferred_pricing_keys.get(canonical_model)
        if preferred_key and preferred_key in self._key_set:
            return preferred_key

        return (
            self._resolve_direct(canonical_model)
            or self._resolve_provider_prefixed(canonical_model)
            or self._resolve_prefix(canonical_model)
            or self._resolve_fuzzy(canonical_model)
        )

    def _resolve_direct(self, normalized_model: str) -> Optional[str]:
        if normalized_model in self._key_set:
            return normalized_model
        stripped_model = strip_provider_prefix(normalized_model)
        if stripped_model in self._key_set:
            return stripped_model
        return None

    def _resolve_provider_prefixed(self, normalized_model: str) -> Optional[str]:
        for candidate in (normalized_model, strip_provider_prefix(normalized_model)):
            matches = [
                key for key in self._keys
                if key.endswith("/" + candidate) or key.endswith("." + candidate)
            ]
            if matches:
                return min(matches, key=lambda key: (len(key), key))
        return None

    def _resolve_prefix(self, normalized_model: str) -> Optional[str]:
        for candidate in (normalized_model, strip_provider_prefix(normalized_model)):
            matches = [key for key in self._keys if is_prefix_model_match(candidate, key)]
            if matches:
                return min(matches, key=lambda key: (-len(key), key))
        return None

    def _resolve_fuzzy(self, normalized_model: str) -> Optional[str]:
        stripped_model = strip_provider_prefix(normalized_model)
        fuzzy_target = canonicalize_for_fuzzy(stripped_model)
        if not fuzzy_target:
            return None

        best_key = None
        best_distance = None
        for key in self._keys:
            if not are_numeric_signatures_compatible(stripped_model, key):
                continue
            fuzzy_key = canonicalize_for_fuzzy(key)
            if not fuzzy_key:
                continue
            distance = levenshtein_distance(fuzzy_target, fuzzy_key)
            if best_distance is None or distance < best_distance:
                best_key = key
                best_distance = distance

        if best_key is None or best_distance > max_fuzzy_distance(fuzzy_target):
            return None
        return best_key
