"""
Shared fixtures: an in-memory Firestore double, a frozen clock and wired services
"""

import copy
from datetime import datetime, timedelta
import itertools
from types import SimpleNamespace
from unittest.mock import Mock
import uuid

from google.api_core.exceptions import AlreadyExists, FailedPrecondition, NotFound
import pytest
import pytz

from config import Settings
from main import build_services

# =============================================
# In-memory Firestore

_COMPARISONS = {
    '<': lambda a, b: a < b,
    '<=': lambda a, b: a <= b,
    '>': lambda a, b: a > b,
    '>=': lambda a, b: a >= b,
}

def _matches(data, field, operator, value):
    if field not in data:
        return False
    actual = data[field]
    if operator == '==':
        return actual == value
    if operator == '!=':
        return actual != value
    if operator == 'in':
        return actual in value
    if operator == 'array_contains':
        return isinstance(actual, list) and value in actual
    if actual is None or value is None:
        return False
    return _COMPARISONS[operator](actual, value)

class MockFirestoreSnapshot:
    def __init__(self, reference, data, update_time):
        self.reference = reference
        self.id = reference.id
        self._data = data
        self.exists = data is not None
        self.update_time = update_time

    def to_dict(self):
        return copy.deepcopy(self._data) if self.exists else None

class MockFirestoreDocument:
    """Document reference backed by its collection's dict"""

    def __init__(self, collection, doc_id):
        self._collection = collection
        self.id = doc_id

    @property
    def _store(self):
        return self._collection.documents

    def get(self):
        data, update_time = self._store.get(self.id, (None, None))
        return MockFirestoreSnapshot(self, copy.deepcopy(data), update_time)

    def set(self, data):
        self._store[self.id] = (copy.deepcopy(data), self._collection.db.tick())

    def create(self, data):
        if self.id in self._store:
            raise AlreadyExists(f"Document already exists: {self._collection.name}/{self.id}")
        self.set(data)

    def update(self, data, option=None):
        if self.id not in self._store:
            raise NotFound(f"No document to update: {self._collection.name}/{self.id}")
        current, update_time = self._store[self.id]
        if option is not None and option.last_update_time != update_time:
            raise FailedPrecondition(f"Document changed since it was read: {self._collection.name}/{self.id}")
        self._store[self.id] = ({**current, **copy.deepcopy(data)}, self._collection.db.tick())

class MockFirestoreQuery:
    """Query supporting where / order_by / limit / stream"""

    def __init__(self, collection, filters=(), orders=(), limit_count=None):
        self._collection = collection
        self._filters = filters
        self._orders = orders
        self._limit = limit_count

    def where(self, field, operator, value):
        return MockFirestoreQuery(self._collection, self._filters + ((field, operator, value),),
                                  self._orders, self._limit)

    def order_by(self, field, direction='ASCENDING'):
        return MockFirestoreQuery(self._collection, self._filters, self._orders + ((field, direction),),
                                  self._limit)

    def limit(self, count):
        return MockFirestoreQuery(self._collection, self._filters, self._orders, count)

    def stream(self):
        snapshots = [self._collection.document(doc_id).get() for doc_id in list(self._collection.documents)]
        results = [s for s in snapshots if all(_matches(s._data, *f) for f in self._filters)]

        for field, direction in reversed(self._orders):
            results = [s for s in results if field in s._data]
            results.sort(key=lambda s: (s._data[field] is not None, s._data[field]),
                         reverse=direction == 'DESCENDING')

        if self._limit is not None:
            results = results[:self._limit]
        return iter(results)

class MockFirestoreCollection(MockFirestoreQuery):
    def __init__(self, db, name):
        super().__init__(self)
        self.db = db
        self.name = name
        self.documents = {}

    def document(self, doc_id=None):
        return MockFirestoreDocument(self, doc_id or uuid.uuid4().hex)

    def add(self, data):
        doc_ref = self.document()
        doc_ref.set(data)
        return self.documents[doc_ref.id][1], doc_ref

class MockWriteBatch:
    """All-or-nothing batch: every precondition is checked before any write is applied"""

    def __init__(self):
        self._writes = []

    def create(self, reference, document_data):
        self._writes.append(('create', reference, document_data, None))

    def set(self, reference, document_data):
        self._writes.append(('set', reference, document_data, None))

    def update(self, reference, field_updates, option=None):
        self._writes.append(('update', reference, field_updates, option))

    def commit(self):
        for kind, reference, _, option in self._writes:
            stored = reference._store.get(reference.id)
            if kind == 'create' and stored is not None:
                raise AlreadyExists(f"Document already exists: {reference._collection.name}/{reference.id}")
            if kind == 'update' and stored is None:
                raise NotFound(f"No document to update: {reference._collection.name}/{reference.id}")
            if option is not None and option.last_update_time != stored[1]:
                raise FailedPrecondition(f"Document changed since it was read: {reference._collection.name}/{reference.id}")

        for kind, reference, data, _ in self._writes:
            if kind == 'update':
                reference.update(data)
            else:
                reference.set(data)
        self._writes = []

class MockFirestore:
    def __init__(self):
        self._collections = {}
        self._clock = itertools.count(1)

    def collection(self, name):
        if name not in self._collections:
            self._collections[name] = MockFirestoreCollection(self, name)
        return self._collections[name]

    def batch(self):
        return MockWriteBatch()

    def write_option(self, **kwargs):
        return SimpleNamespace(**kwargs)

    def tick(self):
        return next(self._clock)

    def docs(self, name):
        """Plain {id: data} view of a collection for assertions"""
        return {doc_id: copy.deepcopy(data) for doc_id, (data, _) in self.collection(name).documents.items()}

# =============================================
# Fixtures

class FrozenClock:
    def __init__(self, now):
        self.current = now

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)

USERS = {
    'teacher-1': 'teacher',
    'teacher-2': 'teacher',
    'student-a': 'student',
    'student-b': 'student',
    'admin-1': 'admin',
    'ngo-1': 'ngo',
    'institution-1': 'institution',
    'other-1': 'other',
}

@pytest.fixture
def clock():
    return FrozenClock(datetime(2025, 3, 1, 12, 0, tzinfo=pytz.utc))

@pytest.fixture
def db():
    mock_db = MockFirestore()
    for uid, role in USERS.items():
        mock_db.collection('users').document(uid).set({'id': uid, 'name': uid, 'role': role})
    return mock_db

@pytest.fixture
def settings():
    test_settings = Settings()
    test_settings.environment = 'test'
    test_settings.allowed_origins = ['*']
    test_settings.notification_webhook_url = None
    test_settings.completion_score = 100.0
    test_settings.default_geofence_radius_km = 5.0
    test_settings.nearby_search_radius_km = 50.0
    test_settings.leaderboard_limit = 10
    return test_settings

@pytest.fixture
def storage_service():
    return Mock()

@pytest.fixture
def services(db, settings, storage_service, clock):
    return build_services(db, settings, storage_service=storage_service, clock=clock)

@pytest.fixture
def make_challenge(services):
    """Create a challenge as teacher-1 unless another creator is given"""
    def _make(creator_id='teacher-1', **overrides):
        fields = {
            'title': 'Plant a Tree',
            'description': 'Plant a tree in your neighbourhood',
            'challenge_type': 'planting',
            'target_value': 1,
            'points_reward': 20,
        }
        fields.update(overrides)
        return services.challenges.create_challenge(creator_id, fields)
    return _make
