"""
Agent template catalog.

Templates are named default configurations used to instantiate agents.
The built-in catalog can be extended from a YAML file; when watching is
enabled the file is reloaded whenever it changes on disk.

Example templates file:

    templates:
      - name: reviewer
        type: analyst
        description: Code review specialist
        config: {autonomy_level: 0.5, max_concurrent_tasks: 2}
"""

import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import yaml
from pydantic import BaseModel, Field
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .errors import TemplateNotFound
from .models import AgentConfig, AgentEnvironment, AgentType

logger = logging.getLogger("fleet.templates")


class AgentTemplate(BaseModel):
    name: str
    type: AgentType
    description: str = ""
    capabilities: List[str] = Field(default_factory=list)
    config: AgentConfig = Field(default_factory=AgentConfig)
    environment: AgentEnvironment = Field(default_factory=AgentEnvironment)


BUILTIN_TEMPLATES = [
    AgentTemplate(
        name="coordinator",
        type=AgentType.COORDINATOR,
        description="Plans work and delegates to other agents",
        capabilities=["planning", "delegation", "monitoring"],
        config=AgentConfig(autonomy_level=0.8, max_concurrent_tasks=10, timeout_threshold=600_000),
    ),
    AgentTemplate(
        name="researcher",
        type=AgentType.RESEARCHER,
        description="Gathers and synthesizes information",
        capabilities=["research", "web_search", "analysis"],
        config=AgentConfig(autonomy_level=0.7, max_concurrent_tasks=5, timeout_threshold=300_000),
    ),
    AgentTemplate(
        name="implementer",
        type=AgentType.IMPLEMENTER,
        description="Writes and tests code",
        capabilities=["code_generation", "testing", "file_system"],
        config=AgentConfig(autonomy_level=0.6, max_concurrent_tasks=3, timeout_threshold=900_000),
        environment=AgentEnvironment(max_memory_usage=1024 * 1024 * 1024),
    ),
    AgentTemplate(
        name="analyst",
        type=AgentType.ANALYST,
        description="Analyzes data and produces reports",
        capabilities=["analysis", "documentation"],
        config=AgentConfig(autonomy_level=0.7, max_concurrent_tasks=4, timeout_threshold=300_000),
    ),
    AgentTemplate(
        name="custom",
        type=AgentType.CUSTOM,
        description="Blank template configured entirely by options",
    ),
]


class TemplateCatalog:
    """Thread-safe name → template lookup."""

    def __init__(self, templates: Optional[Iterable[AgentTemplate]] = None,
                 templates_file: Optional[Path] = None):
        self._lock = threading.RLock()
        self._builtin = list(BUILTIN_TEMPLATES if templates is None else templates)
        self._templates: Dict[str, AgentTemplate] = {}
        self.templates_file = Path(templates_file) if templates_file else None
        self.reload()

    def reload(self) -> int:
        """Rebuild the catalog from built-ins plus the templates file."""
        merged = {t.name.lower(): t for t in self._builtin}
        if self.templates_file is not None:
            for template in load_templates_file(self.templates_file):
                merged[template.name.lower()] = template
        with self._lock:
            self._templates = merged
        logger.debug(f"Template catalog loaded ({len(merged)} templates)")
        return len(merged)

    def register(self, template: AgentTemplate) -> None:
        with self._lock:
            self._templates[template.name.lower()] = template

    def get(self, name: str) -> AgentTemplate:
        with self._lock:
            template = self._templates.get((name or "").strip().lower())
            if template is None:
                known = ", ".join(sorted(self._templates))
                raise TemplateNotFound(f"Template '{name}' not found (available: {known})", subject=name)
            return template.model_copy(deep=True)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return (name or "").strip().lower() in self._templates

    def list(self) -> List[AgentTemplate]:
        with self._lock:
            return [t.model_copy(deep=True) for t in self._templates.values()]


def load_templates_file(path: Path) -> List[AgentTemplate]:
    """Parse a YAML templates file. A missing file yields no templates."""
    path = Path(path)
    if not path.exists():
        return []
    data = yaml.safe_load(path.read_text()) or {}
    entries = data.get("templates", []) if isinstance(data, dict) else data
    return [AgentTemplate.model_validate(entry) for entry in entries]


class _TemplateFileHandler(FileSystemEventHandler):
    def __init__(self, catalog: TemplateCatalog):
        self.catalog = catalog

    def on_modified(self, event):
        if event.is_directory:
            return
        if Path(event.src_path).resolve() != self.catalog.templates_file.resolve():
            return
        try:
            count = self.catalog.reload()
            logger.info(f"🔄 Templates reloaded from {event.src_path} ({count} templates)")
        except Exception as e:
            # Keep serving the previous catalog
            logger.error(f"Failed to reload templates from {event.src_path}: {e}")

    on_created = on_modified


class TemplateWatcher:
    """Reloads a TemplateCatalog when its templates file changes."""

    def __init__(self, catalog: TemplateCatalog):
        if catalog.templates_file is None:
            raise ValueError("TemplateWatcher requires a catalog backed by a templates file")
        self.catalog = catalog
        self.handler = _TemplateFileHandler(catalog)
        self.observer = Observer()

    def start(self):
        if self.observer.is_alive():
            return
        directory = self.catalog.templates_file.resolve().parent
        directory.mkdir(parents=True, exist_ok=True)
        self.observer.schedule(self.handler, str(directory), recursive=False)
        self.observer.start()
        logger.info(f"👁️  Watching templates file {self.catalog.templates_file}")

    def stop(self):
        if self.observer.is_alive():
            self.observer.stop()
            self.observer.join(timeout=5)
