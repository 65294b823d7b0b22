import pytest

from together.config.loader import validate_config_data
from together.core.models import CommandSpec
from together.core.registry import CommandRegistry, Selector, SelectorKind
from together.utils.diagnostics import UnknownReferenceError


@pytest.fixture
def registry():
    config = validate_config_data(
        {
            "startup": ["echo A", "build"],
            "commands": [
                {"command": "echo A"},
                {"alias": "build", "command": "make", "recipes": ["ci"]},
                {"alias": "web", "command": "npm start", "recipes": ["frontend", "dev"], "default": True},
                {"alias": "api", "command": "python -m api", "recipes": ["dev", "dev"], "active": True},
                {"alias": "docs", "command": "mkdocs serve", "recipes": ["frontend"]},
            ],
        }
    )
    return CommandRegistry.from_config(config)


def test_registry_register_and_find():
    registry = CommandRegistry()
    registry.register(CommandSpec(alias="web", command="npm start"))

    assert registry.find("web").command == "npm start"
    assert len(registry) == 1


def test_registry_duplicate_registration_raises():
    registry = CommandRegistry()
    registry.register(CommandSpec(alias="web", command="npm start"))

    with pytest.raises(ValueError):
        registry.register(CommandSpec(alias="web", command="yarn start"))


def test_find_by_alias_or_command(registry):
    assert registry.find("build").command == "make"
    assert registry.find("make").alias == "build"
    assert registry.find("nope") is None


def test_startup_queue_keeps_declared_order(registry):
    queue = registry.startup_queue()

    assert [spec.alias for spec in queue] == ["echo A", "build"]
    assert [spec.startup_order_index for spec in queue] == [0, 1]
    assert registry.find("web").startup_order_index is None


def test_recipes_are_deduplicated(registry):
    assert registry.find("api").recipes == ("dev",)
    assert registry.recipe_names() == ["ci", "dev", "frontend"]
    assert registry.recipe_members("frontend") == ["web", "docs"]


def test_resolve_default_is_auto_start_set(registry):
    assert [spec.alias for spec in registry.resolve()] == ["web", "api"]


def test_resolve_all_keeps_declaration_order(registry):
    assert [spec.alias for spec in registry.resolve(Selector.all())] == ["echo A", "build", "web", "api", "docs"]


def test_resolve_recipes_union_without_duplicates(registry):
    selected = registry.resolve(Selector.recipes(["dev", "frontend"]))
    assert [spec.alias for spec in selected] == ["web", "api", "docs"]


def test_resolve_aliases_accepts_command_text(registry):
    selected = registry.resolve(Selector.aliases(["docs", "npm start", "docs"]))
    assert [spec.alias for spec in selected] == ["web", "docs"]


def test_resolve_unknown_recipe_fails(registry):
    with pytest.raises(UnknownReferenceError) as exc_info:
        registry.resolve(Selector.recipes(["dev", "backend"]))

    assert "backend" in exc_info.value.message
    assert len(exc_info.value.diagnostics) == 1


def test_resolve_unknown_alias_fails(registry):
    with pytest.raises(UnknownReferenceError):
        registry.resolve(Selector.aliases(["ghost"]))


def test_recipe_members_unknown_recipe_fails(registry):
    with pytest.raises(UnknownReferenceError):
        registry.recipe_members("backend")


def test_selector_constructors():
    assert Selector.all().kind == SelectorKind.ALL
    assert Selector.recipes(["a"]).names == ("a",)
    assert Selector.aliases(iter(["x", "y"])).names == ("x", "y")
