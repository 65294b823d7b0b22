from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict

from together.core.models import CommandSpec, TogetherConfig
from together.utils.diagnostics import TogetherDiagnostic, UnknownReferenceError


class SelectorKind(str, Enum):
    """How a selector picks commands out of the registry."""

    ALIASES = "aliases"
    ALL = "all"
    RECIPES = "recipes"


class Selector(BaseModel):
    """
    A request for a launch set: explicit aliases, everything, or recipes.
    """
    model_config = ConfigDict(frozen=True)

    kind: SelectorKind
    names: Tuple[str, ...] = ()

    @classmethod
    def aliases(cls, names: Iterable[str]) -> "Selector":
        return cls(kind=SelectorKind.ALIASES, names=tuple(names))

    @classmethod
    def all(cls) -> "Selector":
        return cls(kind=SelectorKind.ALL)

    @classmethod
    def recipes(cls, names: Iterable[str]) -> "Selector":
        return cls(kind=SelectorKind.RECIPES, names=tuple(names))


class CommandRegistry:
    """
    Alias and recipe lookup for the commands of one loaded config.
    """
    def __init__(self):
        self._items: Dict[str, CommandSpec] = {}
        self._recipes: Dict[str, List[str]] = {}
        self._startup: List[str] = []

    @classmethod
    def from_config(cls, config: TogetherConfig) -> "CommandRegistry":
        """
        Build a registry from a validated config.
        Aliases must already be defaulted, which load_config guarantees.
        """
        startup_positions: Dict[str, int] = {}
        startup_aliases: List[str] = []
        for reference in config.startup:
            alias = cls._reference_to_alias(config, reference)
            startup_aliases.append(alias)
            startup_positions.setdefault(alias, len(startup_aliases) - 1)

        registry = cls()
        for entry in config.commands:
            alias = entry.alias or entry.command
            registry.register(
                CommandSpec(
                    alias=alias,
                    command=entry.command,
                    recipes=tuple(dict.fromkeys(entry.recipes)),
                    startup_order_index=startup_positions.get(alias),
                    auto_start=entry.auto_start,
                )
            )
        registry._startup = startup_aliases
        return registry

    @staticmethod
    def _reference_to_alias(config: TogetherConfig, reference: str) -> str:
        for entry in config.commands:
            if (entry.alias or entry.command) == reference:
                return reference
        for entry in config.commands:
            if entry.command == reference:
                return entry.alias or entry.command
        raise UnknownReferenceError(
            f"Startup entry '{reference}' does not match any declared command",
            [
                TogetherDiagnostic(
                    source="startup",
                    error_code="ERR_UNKNOWN_REFERENCE",
                    message=f"'{reference}' is neither an alias nor a declared command.",
                )
            ],
        )

    def register(self, spec: CommandSpec) -> None:
        """
        Register a command. Raises ValueError if the alias already exists.
        """
        if spec.alias in self._items:
            raise ValueError(f"Command with alias '{spec.alias}' is already registered.")

        self._items[spec.alias] = spec
        for recipe in spec.recipes:
            self._recipes.setdefault(recipe, []).append(spec.alias)

    def find(self, reference: str) -> Optional[CommandSpec]:
        """Look a command up by alias, falling back to its command text."""
        if reference in self._items:
            return self._items[reference]
        for spec in self._items.values():
            if spec.command == reference:
                return spec
        return None

    def startup_queue(self) -> List[CommandSpec]:
        """Commands of the startup phase, in declared order."""
        return [self._items[alias] for alias in self._startup]

    def recipe_names(self) -> List[str]:
        return sorted(self._recipes)

    def recipe_members(self, recipe: str) -> List[str]:
        if recipe not in self._recipes:
            raise self._unknown("recipe", [recipe])
        return list(self._recipes[recipe])

    def resolve(self, selector: Optional[Selector] = None) -> List[CommandSpec]:
        """
        Compute the launch set for a selector without spawning anything.

        No selector means every command flagged active/default.
        Results keep declaration order and hold each command once.
        """
        if selector is None:
            return [spec for spec in self._items.values() if spec.auto_start]

        if selector.kind == SelectorKind.ALL:
            return list(self._items.values())

        if selector.kind == SelectorKind.ALIASES:
            wanted = set()
            missing = []
            for name in selector.names:
                spec = self.find(name)
                if spec is None:
                    missing.append(name)
                else:
                    wanted.add(spec.alias)
            if missing:
                raise self._unknown("command", missing)
            return [spec for spec in self._items.values() if spec.alias in wanted]

        missing = [name for name in selector.names if name not in self._recipes]
        if missing:
            raise self._unknown("recipe", missing)
        wanted = {alias for name in selector.names for alias in self._recipes[name]}
        return [spec for spec in self._items.values() if spec.alias in wanted]

    def _unknown(self, kind: str, names: List[str]) -> UnknownReferenceError:
        return UnknownReferenceError(
            f"Unknown {kind}: {', '.join(names)}",
            [
                TogetherDiagnostic(
                    source="selection",
                    error_code="ERR_UNKNOWN_REFERENCE",
                    message=f"No {kind} named '{name}'.",
                )
                for name in names
            ],
        )

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[CommandSpec]:
        return iter(self._items.values())
