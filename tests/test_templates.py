"""
Template catalog and hot-reload tests.
"""

import pytest
import yaml
from watchdog.events import FileModifiedEvent

from mcp_server_fleet.runtime.errors import TemplateNotFound
from mcp_server_fleet.runtime.models import AgentType
from mcp_server_fleet.runtime.templates import (
    AgentTemplate,
    TemplateCatalog,
    TemplateWatcher,
    _TemplateFileHandler,
    load_templates_file,
)


def write_templates(path, *templates):
    path.write_text(yaml.safe_dump({"templates": list(templates)}))


class TestCatalog:
    def test_builtins(self):
        catalog = TemplateCatalog()
        assert {t.name for t in catalog.list()} == {
            "coordinator", "researcher", "implementer", "analyst", "custom",
        }
        assert catalog.get("implementer").environment.max_memory_usage == 1024 * 1024 * 1024

    def test_lookup_is_case_insensitive(self):
        catalog = TemplateCatalog()
        assert catalog.get("  ReSeArChEr ").type == AgentType.RESEARCHER
        assert "ANALYST" in catalog

    def test_unknown(self):
        with pytest.raises(TemplateNotFound) as exc:
            TemplateCatalog().get("wizard")
        assert exc.value.subject == "wizard"

    def test_returned_templates_are_copies(self):
        catalog = TemplateCatalog()
        catalog.get("researcher").config.max_concurrent_tasks = 99
        assert catalog.get("researcher").config.max_concurrent_tasks == 5

    def test_register(self):
        catalog = TemplateCatalog(templates=[])
        catalog.register(AgentTemplate(name="Solo", type=AgentType.CUSTOM))
        assert catalog.get("solo").name == "Solo"


class TestTemplatesFile:
    """Templates loaded from YAML."""

    def test_file_extends_builtins(self, tmp_path):
        path = tmp_path / "templates.yaml"
        write_templates(path, {
            "name": "reviewer",
            "type": "analyst",
            "description": "Code review specialist",
            "config": {"autonomy_level": 0.5, "max_concurrent_tasks": 2},
        })

        catalog = TemplateCatalog(templates_file=path)

        reviewer = catalog.get("reviewer")
        assert reviewer.type == AgentType.ANALYST
        assert reviewer.config.max_concurrent_tasks == 2
        assert "researcher" in catalog

    def test_file_overrides_builtin(self, tmp_path):
        path = tmp_path / "templates.yaml"
        write_templates(path, {"name": "researcher", "type": "researcher", "config": {"max_concurrent_tasks": 9}})
        assert TemplateCatalog(templates_file=path).get("researcher").config.max_concurrent_tasks == 9

    def test_missing_file(self, tmp_path):
        assert load_templates_file(tmp_path / "missing.yaml") == []

    def test_reload_picks_up_changes(self, tmp_path):
        path = tmp_path / "templates.yaml"
        write_templates(path, {"name": "one", "type": "custom"})
        catalog = TemplateCatalog(templates_file=path)

        write_templates(path, {"name": "two", "type": "custom"})
        catalog.reload()

        assert "two" in catalog
        assert "one" not in catalog


class TestWatcher:
    def test_handler_reloads_on_modification(self, tmp_path):
        path = tmp_path / "templates.yaml"
        write_templates(path, {"name": "one", "type": "custom"})
        catalog = TemplateCatalog(templates_file=path)
        handler = _TemplateFileHandler(catalog)

        write_templates(path, {"name": "two", "type": "custom"})
        handler.on_modified(FileModifiedEvent(str(path)))

        assert "two" in catalog

    def test_handler_ignores_other_files(self, tmp_path):
        path = tmp_path / "templates.yaml"
        write_templates(path, {"name": "one", "type": "custom"})
        catalog = TemplateCatalog(templates_file=path)
        handler = _TemplateFileHandler(catalog)

        write_templates(path, {"name": "two", "type": "custom"})
        handler.on_modified(FileModifiedEvent(str(tmp_path / "other.yaml")))

        assert "two" not in catalog

    def test_broken_file_keeps_previous_catalog(self, tmp_path):
        path = tmp_path / "templates.yaml"
        write_templates(path, {"name": "one", "type": "custom"})
        catalog = TemplateCatalog(templates_file=path)
        handler = _TemplateFileHandler(catalog)

        path.write_text(yaml.safe_dump({"templates": [{"name": "bad", "type": "wizard"}]}))
        handler.on_modified(FileModifiedEvent(str(path)))

        assert "one" in catalog

    def test_watcher_requires_file(self):
        with pytest.raises(ValueError):
            TemplateWatcher(TemplateCatalog())

    def test_watcher_start_stop(self, tmp_path):
        path = tmp_path / "templates.yaml"
        write_templates(path, {"name": "one", "type": "custom"})
        watcher = TemplateWatcher(TemplateCatalog(templates_file=path))
        watcher.start()
        assert watcher.observer.is_alive()
        watcher.stop()
        assert not watcher.observer.is_alive()
