"""
infrastructure.py

In-memory implementation of all repository interfaces, the entity store
and the Unit of Work.

This is a self-contained, zero-dependency backend that stores everything in
plain Python dicts keyed by entity id: an arena of projects, scenarios,
phases, specifiers and calendars that reference each other by id.  It is
suitable for local development, demos, and integration testing.

To swap in a real database later, implement the same Abstract* interfaces
from application.py; nothing in service.py or application.py needs to change.
"""

from __future__ import annotations

import copy
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from application import (
    AbstractCalendarRepository,
    AbstractEntityStore,
    AbstractPhaseRepository,
    AbstractProjectRepository,
    AbstractScenarioRepository,
    AbstractSpecifierRepository,
    AbstractUnitOfWork,
)
from model import EntityKind


# ---------------------------------------------------------------------------
# Generic in-memory store
# ---------------------------------------------------------------------------

class _Store(dict):
    """A plain dict with typed get/save/delete helpers."""

    def fetch(self, key: str):
        return self.get(key)

    def put(self, obj) -> None:
        self[obj.id] = obj

    def remove(self, key: str) -> None:
        self.pop(key, None)


# ---------------------------------------------------------------------------
# Shared in-memory database (module-level singleton)
# Persists for the lifetime of the process.
# ---------------------------------------------------------------------------

class InMemoryDatabase:
    def __init__(self):
        self.projects:   _Store = _Store()
        self.scenarios:  _Store = _Store()
        self.phases:     _Store = _Store()
        self.specifiers: _Store = _Store()
        self.calendars:  _Store = _Store()

    def tables(self) -> Dict[EntityKind, _Store]:
        return {
            EntityKind.PROJECT:   self.projects,
            EntityKind.SCENARIO:  self.scenarios,
            EntityKind.PHASE:     self.phases,
            EntityKind.SPECIFIER: self.specifiers,
            EntityKind.CALENDAR:  self.calendars,
        }


# Module-level singleton, shared by every default InMemoryUnitOfWork
_db = InMemoryDatabase()


# ---------------------------------------------------------------------------
# Read-only snapshot
# ---------------------------------------------------------------------------

class InMemorySnapshot(AbstractEntityStore):
    """
    Deep-copied, read-only view of an InMemoryDatabase taken at construction.
    Later writes to the database are not visible, and the mappings cannot be
    written through, so one snapshot may be shared by concurrent rollups.
    """

    def __init__(self, db: InMemoryDatabase):
        self._tables: Mapping[EntityKind, Mapping[str, object]] = MappingProxyType({
            kind: MappingProxyType(copy.deepcopy(dict(store)))
            for kind, store in db.tables().items()
        })

    def get(self, kind: EntityKind, entity_id: str) -> Optional[object]:
        return self._tables[EntityKind(kind)].get(entity_id)


# ---------------------------------------------------------------------------
# Repository implementations
# ---------------------------------------------------------------------------

class InMemoryProjectRepository(AbstractProjectRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, project_id):        return self._s.fetch(project_id)
    def save(self, project):          self._s.put(project)


class InMemoryScenarioRepository(AbstractScenarioRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, scenario_id):       return self._s.fetch(scenario_id)
    def save(self, scenario):         self._s.put(scenario)


class InMemoryPhaseRepository(AbstractPhaseRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, phase_id):          return self._s.fetch(phase_id)
    def save(self, phase):            self._s.put(phase)
    def delete(self, phase_id):       self._s.remove(phase_id)


class InMemorySpecifierRepository(AbstractSpecifierRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, specifier_id):      return self._s.fetch(specifier_id)
    def save(self, specifier):        self._s.put(specifier)


class InMemoryCalendarRepository(AbstractCalendarRepository):
    def __init__(self, store: _Store): self._s = store
    def get(self, calendar_id):       return self._s.fetch(calendar_id)
    def save(self, calendar):         self._s.put(calendar)


# ---------------------------------------------------------------------------
# Unit of Work
# ---------------------------------------------------------------------------

class InMemoryUnitOfWork(AbstractUnitOfWork):
    """
    Wraps all in-memory repositories.  commit() and rollback() are no-ops
    because dict mutations are immediate; there is no transaction to manage.
    Use cases that must be all-or-nothing compute first and save last.
    """

    def __init__(self, db: InMemoryDatabase = _db):
        self._db = db
        self.projects   = InMemoryProjectRepository(db.projects)
        self.scenarios  = InMemoryScenarioRepository(db.scenarios)
        self.phases     = InMemoryPhaseRepository(db.phases)
        self.specifiers = InMemorySpecifierRepository(db.specifiers)
        self.calendars  = InMemoryCalendarRepository(db.calendars)

    def snapshot(self) -> InMemorySnapshot:
        return InMemorySnapshot(self._db)

    def commit(self)   -> None: pass   # no-op for in-memory
    def rollback(self) -> None: pass   # no-op for in-memory
