"""Tree encoding settings.

Naming of the auxiliary closure structures, the materialized path format,
the SQL aliases used by the generated queries, and the fan-out limit for
``TreeRepository.find_trees``.
"""

from __future__ import annotations

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .yaml_sources import create_tree_yaml_source


class TreeSettings(BaseSettings):
    """Tree repository configuration.

    Environment variables use TREE_ prefix.
    Example: TREE_CLOSURE_TABLE_SUFFIX=_closure, TREE_MAX_CONCURRENT_TREES=4

    Changing the naming fields after closure tables or paths have been
    written requires a data migration; they are read once when
    ``register_tree_events`` runs.
    """

    # ─────────────────────────────────────────────────────
    # Closure table naming
    # ─────────────────────────────────────────────────────
    closure_table_suffix: str = Field(
        default="_closure",
        min_length=1,
        max_length=32,
        description="Suffix appended to the entity table name for its closure table.",
    )
    ancestor_column_suffix: str = Field(
        default="_ancestor",
        min_length=1,
        max_length=32,
        description="Suffix appended to each primary-key column for ancestor columns.",
    )
    descendant_column_suffix: str = Field(
        default="_descendant",
        min_length=1,
        max_length=32,
        description="Suffix appended to each primary-key column for descendant columns.",
    )

    # ─────────────────────────────────────────────────────
    # Materialized path format
    # ─────────────────────────────────────────────────────
    path_separator: str = Field(
        default=".",
        min_length=1,
        max_length=4,
        description="Terminator written after each key in a materialized path.",
    )
    path_key_separator: str = Field(
        default="_",
        min_length=1,
        max_length=4,
        description="Joins the values of a composite primary key inside one path segment.",
    )

    # ─────────────────────────────────────────────────────
    # Query aliases
    # ─────────────────────────────────────────────────────
    entity_alias: str = Field(
        default="treeEntity",
        min_length=1,
        max_length=63,
        description="Default alias of the entity in generated tree queries.",
    )
    closure_alias: str = Field(
        default="treeClosure",
        min_length=1,
        max_length=63,
        description="Default alias of the closure table (or joined entity) in tree queries.",
    )

    # ─────────────────────────────────────────────────────
    # Concurrency
    # ─────────────────────────────────────────────────────
    max_concurrent_trees: int = Field(
        default=8,
        ge=1,
        le=256,
        description="Maximum descendant-tree fetches find_trees() runs at once.",
    )

    model_config = SettingsConfigDict(
        env_prefix="TREE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )

    @classmethod
    def settings_customise_sources(
        cls, settings_cls, init_settings, env_settings, dotenv_settings, file_secret_settings
    ):
        """Customize settings source precedence: init > yaml > env > dotenv > secrets."""
        return (
            init_settings,
            create_tree_yaml_source(settings_cls),
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    @field_validator("entity_alias", "closure_alias")
    @classmethod
    def _validate_alias(cls, value: str) -> str:
        if not value.replace("_", "").isalnum() or value[0].isdigit():
            msg = f"Alias must be alphanumeric/underscore and not start with a digit: {value!r}"
            raise ValueError(msg)
        return value

    @model_validator(mode="after")
    def _validate_distinct(self) -> TreeSettings:
        if self.entity_alias == self.closure_alias:
            msg = "entity_alias and closure_alias must differ"
            raise ValueError(msg)
        if self.ancestor_column_suffix == self.descendant_column_suffix:
            msg = "ancestor_column_suffix and descendant_column_suffix must differ"
            raise ValueError(msg)
        if self.path_separator == self.path_key_separator:
            msg = "path_separator and path_key_separator must differ"
            raise ValueError(msg)
        return self


__all__ = ["TreeSettings"]
