"""
Shared pytest fixtures for the Timeline CRM test suite.

Provides:
    - fake_supabase: in-memory stand-in for the Supabase client (tables,
      filters, storage, auth and auth-state listeners)
    - catalog: the 3 phases and 23 steps seeded into the fake
    - admin_user / cliente_user: auth accounts with their ``users`` rows
    - app: Flask application wired to the fake
    - client: Flask test client
    - login: helper that signs a user in through POST /login
"""
import copy
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from supabase import AuthApiError, PostgrestAPIError

from timeline_crm.models import ETAPAS_POR_FASE, FASE_ORDEM, UserRole

ADMIN_EMAIL = 'admin@timeline.test'
CLIENTE_EMAIL = 'cliente@acme.test'
PASSWORD = 'segredo123'


def _now():
    return datetime.now(timezone.utc).isoformat()


def _lookup(row, path):
    value = row
    for part in path.split('.'):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


class FakeResponse:

    def __init__(self, data, count=None):
        self.data = data
        self.count = count


class FakeQuery:
    """Chainable query over one in-memory table, PostgREST style."""

    def __init__(self, fake, table):
        self.fake = fake
        self.table = table
        self.op = 'select'
        self.columns = '*'
        self.count = None
        self.head = False
        self.filters = []
        self.ordering = None
        self.max_rows = None
        self.is_single = False
        self.payload = None

    # --- builders ---

    def select(self, columns='*', count=None, head=False):
        self.columns = columns
        self.count = count
        self.head = head
        return self

    def insert(self, payload):
        self.op = 'insert'
        self.payload = payload
        return self

    def update(self, payload):
        self.op = 'update'
        self.payload = payload
        return self

    def delete(self):
        self.op = 'delete'
        return self

    def eq(self, column, value):
        self.filters.append((column, value))
        return self

    def order(self, column, desc=False):
        self.ordering = (column, desc)
        return self

    def limit(self, size):
        self.max_rows = size
        return self

    def single(self):
        self.is_single = True
        return self

    # --- execution ---

    def execute(self):
        self.fake.calls.append((self.table, self.op))
        failure = self.fake.failures.get((self.table, self.op))
        if failure is not None:
            raise failure
        return getattr(self, f'_run_{self.op}')()

    def _rows(self):
        return self.fake.tables.setdefault(self.table, [])

    def _matches(self, row):
        return all(str(_lookup(row, column)) == str(value) for column, value in self.filters)

    def _run_select(self):
        rows = [self.fake.embed(self.table, row, self.columns) for row in self._rows()]
        rows = [row for row in rows if self._matches(row)]

        if self.ordering:
            column, desc = self.ordering
            rows.sort(key=lambda row: str(row.get(column) or ''), reverse=desc)
        if self.max_rows is not None:
            rows = rows[:self.max_rows]

        count = len(rows) if self.count else None
        if self.head:
            return FakeResponse([], count)
        if self.is_single:
            if len(rows) != 1:
                raise PostgrestAPIError({
                    'code': 'PGRST116',
                    'message': 'JSON object requested, multiple (or no) rows returned',
                    'details': f'The result contains {len(rows)} rows',
                    'hint': None,
                })
            return FakeResponse(rows[0], count)
        return FakeResponse(rows, count)

    def _run_insert(self):
        payload = self.payload if isinstance(self.payload, list) else [self.payload]
        inserted = []
        for item in payload:
            row = dict(item)
            row.setdefault('id', str(uuid.uuid4()))
            row.setdefault('created_at', _now())
            self._rows().append(row)
            inserted.append(copy.deepcopy(row))
        return FakeResponse(inserted)

    def _run_update(self):
        updated = []
        for row in self._rows():
            if self._matches(row):
                row.update(copy.deepcopy(self.payload))
                updated.append(copy.deepcopy(row))
        return FakeResponse(updated)

    def _run_delete(self):
        kept, removed = [], []
        for row in self._rows():
            (removed if self._matches(row) else kept).append(row)
        self.fake.tables[self.table] = kept
        return FakeResponse(removed)


class FakeBucket:

    def __init__(self, storage, name):
        self.storage = storage
        self.name = name

    def _record(self, op, *args):
        self.storage.calls.append((self.name, op) + args)
        failure = self.storage.failures.get(op)
        if failure is not None:
            raise failure

    def upload(self, path, data, options=None):
        self._record('upload', path)
        self.storage.objects[(self.name, path)] = data
        return SimpleNamespace(path=path, full_path=f'{self.name}/{path}')

    def create_signed_url(self, path, expires_in):
        self._record('create_signed_url', path)
        return {'signedURL': f'https://storage.test/sign/{self.name}/{path}?expires={expires_in}'}

    def get_public_url(self, path):
        self._record('get_public_url', path)
        return f'https://storage.test/public/{self.name}/{path}'

    def remove(self, paths):
        self._record('remove', *paths)
        for path in paths:
            self.storage.objects.pop((self.name, path), None)
        return []

    def list(self, path='', options=None):
        self._record('list', path)
        return [{'name': key[1]} for key in self.storage.objects if key[0] == self.name]

    def move(self, from_path, to_path):
        self._record('move', from_path, to_path)
        self.storage.objects[(self.name, to_path)] = self.storage.objects.pop((self.name, from_path))

    def download(self, path):
        self._record('download', path)
        return self.storage.objects[(self.name, path)]


class FakeStorage:

    def __init__(self):
        self.objects = {}
        self.calls = []
        self.failures = {}

    def from_(self, bucket):
        return FakeBucket(self, bucket)


class FakeSubscription:

    def __init__(self, auth, callback):
        self.auth = auth
        self.callback = callback

    def unsubscribe(self):
        if self.callback in self.auth.listeners:
            self.auth.listeners.remove(self.callback)


class FakeAuth:

    def __init__(self):
        self.accounts = {}
        self.session = None
        self.listeners = []
        self.get_user_calls = 0
        self.reset_requests = []

    def add_account(self, email, password, user_id=None):
        user_id = user_id or str(uuid.uuid4())
        self.accounts[email] = {'id': user_id, 'password': password}
        return user_id

    def emit(self, event, session=None):
        for callback in list(self.listeners):
            callback(event, session if session is not None else self.session)

    def on_auth_state_change(self, callback):
        self.listeners.append(callback)
        return FakeSubscription(self, callback)

    def sign_in_with_password(self, credentials):
        account = self.accounts.get(credentials['email'])
        if account is None or account['password'] != credentials['password']:
            raise AuthApiError('Invalid login credentials', 400, 'invalid_credentials')
        user = SimpleNamespace(id=account['id'], email=credentials['email'])
        self.session = SimpleNamespace(
            access_token=f"token-{account['id']}", refresh_token='refresh', user=user
        )
        self.emit('SIGNED_IN')
        return SimpleNamespace(user=user, session=self.session)

    def sign_up(self, credentials):
        user_id = self.add_account(credentials['email'], credentials['password'])
        self.accounts[credentials['email']]['metadata'] = credentials.get('options', {}).get('data')
        return SimpleNamespace(user=SimpleNamespace(id=user_id, email=credentials['email']), session=None)

    def get_user(self, jwt=None):
        self.get_user_calls += 1
        if self.session is None:
            return None
        return SimpleNamespace(user=self.session.user)

    def get_session(self):
        return self.session

    def sign_out(self, options=None):
        self.session = None
        self.emit('SIGNED_OUT')

    def update_user(self, attributes):
        email = self.session.user.email
        self.accounts[email]['password'] = attributes['password']
        return SimpleNamespace(user=self.session.user)

    def reset_password_for_email(self, email, options=None):
        self.reset_requests.append((email, options))


class FakeSupabase:

    def __init__(self):
        self.tables = {}
        self.calls = []
        self.failures = {}
        self.storage = FakeStorage()
        self.auth = FakeAuth()
        self.options = SimpleNamespace(headers={})

    def table(self, name):
        return FakeQuery(self, name)

    def rows(self, name):
        return self.tables.setdefault(name, [])

    def embed(self, table, row, columns):
        row = copy.deepcopy(row)
        if table == 'projeto_timeline' and 'etapa:' in columns:
            self._embed_timeline(row)
        if table == 'projetos':
            if 'cliente:' in columns:
                row['cliente'] = self._find('clientes', row.get('cliente_id'))
            if 'timeline:' in columns:
                row['timeline'] = [
                    self._embed_timeline(copy.deepcopy(entry))
                    for entry in self.rows('projeto_timeline')
                    if entry['projeto_id'] == row['id']
                ]
        return row

    def _embed_timeline(self, row):
        etapa = self._find('etapas', row.get('etapa_id'))
        if etapa is not None:
            etapa['fase'] = self._find('fases', etapa.get('fase_id'))
        row['etapa'] = etapa
        row['arquivos'] = [
            copy.deepcopy(a) for a in self.rows('arquivos') if a['projeto_timeline_id'] == row['id']
        ]
        return row

    def _find(self, table, row_id):
        for row in self.rows(table):
            if row['id'] == row_id:
                return copy.deepcopy(row)
        return None


# ── Fixtures ─────────────────────────────────────────────────────────────


@pytest.fixture
def fake_supabase():
    return FakeSupabase()


@pytest.fixture
def catalog(fake_supabase):
    """Seeds the fixed phase/step catalog; returns {fase_nome: [etapa rows]}."""
    seeded = {}
    for fase_nome, etapas in ETAPAS_POR_FASE.items():
        fase_id = str(uuid.uuid4())
        fake_supabase.rows('fases').append({
            'id': fase_id, 'nome': fase_nome.value, 'ordem': FASE_ORDEM[fase_nome],
        })
        seeded[fase_nome.value] = []
        for ordem, nome in enumerate(etapas, start=1):
            row = {'id': str(uuid.uuid4()), 'fase_id': fase_id, 'nome': nome, 'ordem': ordem}
            fake_supabase.rows('etapas').append(row)
            seeded[fase_nome.value].append(row)
    return seeded


@pytest.fixture
def cliente_row(fake_supabase):
    row = {
        'id': str(uuid.uuid4()),
        'nome': 'Acme Ltda',
        'email': CLIENTE_EMAIL,
        'telefone': '11987654321',
        'empresa': 'Acme',
        'ativo': True,
        'created_at': _now(),
    }
    fake_supabase.rows('clientes').append(row)
    return row


@pytest.fixture
def admin_user(fake_supabase):
    user_id = fake_supabase.auth.add_account(ADMIN_EMAIL, PASSWORD)
    row = {'id': user_id, 'email': ADMIN_EMAIL, 'nome': 'Admin', 'role': UserRole.ADMIN.value}
    fake_supabase.rows('users').append(row)
    return row


@pytest.fixture
def cliente_user(fake_supabase, cliente_row):
    user_id = fake_supabase.auth.add_account(CLIENTE_EMAIL, PASSWORD)
    row = {
        'id': user_id,
        'email': CLIENTE_EMAIL,
        'nome': 'Cliente Acme',
        'role': UserRole.CLIENTE.value,
        'cliente_id': cliente_row['id'],
    }
    fake_supabase.rows('users').append(row)
    return row


@pytest.fixture
def app(fake_supabase, monkeypatch):
    """Flask app whose Supabase clients are all the in-memory fake."""
    monkeypatch.setattr(
        'timeline_crm.services.supabase_service.create_client',
        lambda url, key, options=None: fake_supabase,
    )
    from timeline_crm.app import create_app

    application = create_app({
        'TESTING': True,
        'SECRET_KEY': 'test-secret',
        'SUPABASE_URL': 'https://project.supabase.test',
        'SUPABASE_KEY': 'anon-key',
        'SITE_URL': 'https://timeline.test',
        'SESSION_LOAD_TIMEOUT': 5,
        'STREAM_POLL_SECONDS': 0.05,
    })
    return application


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login(client):
    def _login(email, password=PASSWORD):
        return client.post('/login', json={'email': email, 'password': password})
    return _login
