"""
Masking filter for sensitive fields.

Runs as a regular pipeline filter, so masking happens before a log is
persisted and no sensitive value ever reaches the queue or the output.
"""

from typing import Any, Dict, Iterable, Optional, Set

from ..config import MaskingSettings

FULL_MASK = "****"


class MaskingFilter:
    """
    Pure filter returning a masked deep copy of a log.

    Features:
    - Case-insensitive key matching, including keys containing a mask key
    - Partial masking (keep prefixes/suffixes, email local part)
    - Deep traversal of nested dicts and lists
    """

    def __init__(
        self,
        mask_keys: Optional[Iterable[str]] = None,
        partial_rules: Optional[Dict[str, Dict[str, Any]]] = None,
    ) -> None:
        defaults = MaskingSettings.model_construct()
        keys = mask_keys if mask_keys is not None else defaults.mask_keys
        self.mask_keys: Set[str] = {key.lower() for key in keys}
        rules = partial_rules if partial_rules is not None else defaults.partial_rules
        self.partial_rules: Dict[str, Dict[str, Any]] = {k.lower(): v for k, v in rules.items()}

    @classmethod
    def from_settings(cls, settings: MaskingSettings) -> "MaskingFilter":
        return cls(mask_keys=settings.mask_keys, partial_rules=settings.partial_rules)

    def __call__(self, log: Any) -> Any:
        return self._deep_copy_and_mask(log)

    def _deep_copy_and_mask(self, obj: Any) -> Any:
        if isinstance(obj, dict):
            masked_dict = {}
            for key, value in obj.items():
                if isinstance(key, str) and self._should_mask_key(key):
                    masked_dict[key] = self._mask_value(key, value)
                else:
                    masked_dict[key] = self._deep_copy_and_mask(value)
            return masked_dict

        elif isinstance(obj, list):
            return [self._deep_copy_and_mask(item) for item in obj]

        else:
            return obj

    def _should_mask_key(self, key: str) -> bool:
        key_lower = key.lower()
        return any(mask_key in key_lower for mask_key in self.mask_keys)

    def _mask_value(self, key: str, value: Any) -> str:
        str_value = str(value) if value is not None else ""
        key_lower = key.lower()

        # Exact rule first, then any rule whose key is contained in this one
        rule = self.partial_rules.get(key_lower)
        if rule is None:
            rule = next(
                (config for rule_key, config in self.partial_rules.items() if rule_key in key_lower),
                None
            )

        if rule is not None:
            return self._apply_partial_masking(str_value, rule)
        return self._apply_full_masking(str_value)

    def _apply_partial_masking(self, value: str, rule_config: Dict[str, Any]) -> str:
        if not value:
            return FULL_MASK

        if rule_config.get("mask_email"):
            return self._mask_email(value)

        if "keep_prefix" in rule_config:
            prefix_len = rule_config["keep_prefix"]
            if len(value) <= prefix_len:
                return FULL_MASK
            return f"{value[:prefix_len]}{FULL_MASK}"

        if "keep_suffix" in rule_config:
            suffix_len = rule_config["keep_suffix"]
            if len(value) <= suffix_len:
                return FULL_MASK
            return f"{FULL_MASK}{value[-suffix_len:]}"

        return self._apply_full_masking(value)

    def _apply_full_masking(self, value: str) -> str:
        # Very long values keep a length hint
        if len(value) <= 16:
            return FULL_MASK
        return f"{FULL_MASK}[{len(value)} chars]"

    def _mask_email(self, email: str) -> str:
        """Mask email addresses as e*****e@email.com for example@email.com"""
        if "@" not in email:
            return FULL_MASK

        local_part, domain = email.split("@", 1)
        if len(local_part) <= 2:
            masked_local = FULL_MASK
        else:
            middle_stars = "*" * min(5, len(local_part) - 2)
            masked_local = f"{local_part[0]}{middle_stars}{local_part[-1]}"

        return f"{masked_local}@{domain}"
