"""
Replication config: the immutable source -> destinations table.

Loaded once at startup from a YAML/JSON file and only read afterwards, so
lookups need no locking.
"""

from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Set, Tuple, Union

import yaml
from pydantic import ValidationError

from common.logging_config import get_logger
from common.types import SecretRef
from reflector.exceptions import ConfigError
from reflector.schemas.replication import ReplicationFile

logger = get_logger(__name__)


@dataclass(frozen=True)
class ReplicationRule:
    """
    One source secret and the ordered destinations it is copied to.
    """
    source: SecretRef
    destinations: Tuple[SecretRef, ...]

    def __post_init__(self):
        if not self.destinations:
            raise ValueError(f"Rule for {self.source} has no destinations")


class ReplicationConfig:
    """
    Ordered, read-only sequence of replication rules with a source index.
    """

    def __init__(self, rules: Iterable[ReplicationRule]):
        self._rules: Tuple[ReplicationRule, ...] = tuple(rules)
        index: Dict[SecretRef, List[ReplicationRule]] = {}
        for rule in self._rules:
            index.setdefault(rule.source, []).append(rule)
        self._by_source: Dict[SecretRef, Tuple[ReplicationRule, ...]] = {
            source: tuple(matching) for source, matching in index.items()
        }

    @property
    def rules(self) -> Tuple[ReplicationRule, ...]:
        return self._rules

    def __len__(self) -> int:
        return len(self._rules)

    def rules_for(self, ref: SecretRef) -> List[ReplicationRule]:
        """
        Return the rules whose source equals ref, in config order.

        Args:
            ref: Identity of an observed secret

        Returns:
            Matching rules; empty list when the secret is not a source
        """
        return list(self._by_source.get(ref, ()))

    def source_namespaces(self) -> Set[str]:
        """Distinct namespaces that hold at least one source secret."""
        return {source.namespace for source in self._by_source}

    def duplicate_destinations(self) -> List[SecretRef]:
        """Destinations named by more than one rule (a configuration error)."""
        counts = Counter(dest for rule in self._rules for dest in set(rule.destinations))
        return sorted((ref for ref, count in counts.items() if count > 1), key=str)

    @classmethod
    def from_document(cls, document: Union[list, dict, None]) -> "ReplicationConfig":
        """
        Build a config from an already-parsed YAML/JSON document.

        Raises:
            ConfigError: If the document does not describe a list of rules
        """
        if document is None:
            document = []
        if isinstance(document, list):
            document = {"rules": document}
        if not isinstance(document, dict):
            raise ConfigError("Replication config must be a list of rules or a mapping with 'rules'")

        try:
            parsed = ReplicationFile.model_validate(document)
        except ValidationError as e:
            raise ConfigError(f"Invalid replication config: {e}") from e

        rules = []
        for position, item in enumerate(parsed.rules):
            try:
                rules.append(ReplicationRule(
                    source=SecretRef.parse(item.source),
                    destinations=tuple(SecretRef.parse(dest) for dest in item.destination),
                ))
            except ValueError as e:
                raise ConfigError(f"Invalid replication rule #{position + 1}: {e}") from e
        return cls(rules)


def load_replication_config(path: Union[str, Path]) -> ReplicationConfig:
    """
    Load and validate the replication config file.

    Args:
        path: Path to a YAML or JSON file

    Returns:
        ReplicationConfig instance

    Raises:
        ConfigError: If the file is missing, unparsable or invalid
    """
    config_path = Path(path)
    try:
        with open(config_path, 'r') as f:
            document = yaml.safe_load(f)
    except (IOError, OSError) as e:
        raise ConfigError(f"Cannot read replication config {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse replication config {config_path}: {e}") from e

    config = ReplicationConfig.from_document(document)

    for dest in config.duplicate_destinations():
        logger.warning(f"Destination {dest} is targeted by more than one rule; last writer wins")

    for rule in config.rules:
        if rule.source in rule.destinations:
            logger.warning(f"Rule for {rule.source} lists its own source as a destination")

    destination_count = sum(len(rule.destinations) for rule in config.rules)
    logger.info(
        f"Loaded {len(config)} replication rule(s) from {config_path} "
        f"({destination_count} destination(s), {len(config.source_namespaces())} source namespace(s))"
    )
    return config
