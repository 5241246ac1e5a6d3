"""
Session manager tests: sign-in/out, de-duplicated auth events, visibility
revalidation and the bounded initial load.
"""
import threading
import time

import pytest

from timeline_crm.errors import AuthError, EmailNotConfirmedError, InvalidCredentialsError, NotFoundError
from timeline_crm.models import User
from timeline_crm.services.session_service import SessionManager, fetch_profile, map_auth_error

from conftest import ADMIN_EMAIL, CLIENTE_EMAIL, PASSWORD, FakeAuth


class CountingLoader:
    """profile_loader double that counts fetches."""

    def __init__(self, users, delay=0):
        self.users = users
        self.calls = 0
        self.delay = delay

    def __call__(self, user_id):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        return User.model_validate(self.users[user_id])


@pytest.fixture
def auth():
    return FakeAuth()


@pytest.fixture
def admin_profile(auth):
    user_id = auth.add_account(ADMIN_EMAIL, PASSWORD)
    return {'id': user_id, 'email': ADMIN_EMAIL, 'nome': 'Admin', 'role': 'admin'}


@pytest.fixture
def cliente_profile(auth):
    user_id = auth.add_account(CLIENTE_EMAIL, PASSWORD)
    return {'id': user_id, 'email': CLIENTE_EMAIL, 'nome': 'Cliente', 'role': 'cliente', 'cliente_id': 'c-1'}


@pytest.fixture
def loader(admin_profile, cliente_profile):
    return CountingLoader({admin_profile['id']: admin_profile, cliente_profile['id']: cliente_profile})


@pytest.fixture
def manager(auth, loader):
    mgr = SessionManager(auth, loader, store={})
    mgr.start()
    yield mgr
    mgr.close()


class TestSignIn:

    def test_admin_goes_to_dashboard(self, manager):
        assert manager.sign_in(ADMIN_EMAIL, PASSWORD) == '/admin/dashboard'
        assert manager.user.email == ADMIN_EMAIL
        assert manager.is_admin
        assert manager.loading is False

    def test_cliente_goes_to_project_list(self, manager):
        assert manager.sign_in(CLIENTE_EMAIL, PASSWORD) == '/cliente/projetos'
        assert not manager.is_admin

    def test_wrong_password_raises_typed_error(self, manager):
        with pytest.raises(InvalidCredentialsError) as exc:
            manager.sign_in(ADMIN_EMAIL, 'errada123')
        assert exc.value.message == 'Email ou senha incorretos'
        assert manager.user is None

    def test_profile_fetched_once_despite_signed_in_event(self, manager, loader):
        manager.sign_in(ADMIN_EMAIL, PASSWORD)
        assert loader.calls == 1

    def test_navigate_callback_receives_home_route(self, auth, loader):
        visited = []
        mgr = SessionManager(auth, loader, navigate=visited.append)
        mgr.start()
        mgr.sign_in(ADMIN_EMAIL, PASSWORD)
        assert visited == ['/admin/dashboard']

    def test_profile_failure_propagates(self, auth):
        auth.add_account('orfao@timeline.test', PASSWORD)

        def missing(user_id):
            raise NotFoundError()

        mgr = SessionManager(auth, missing)
        with pytest.raises(NotFoundError):
            mgr.sign_in('orfao@timeline.test', PASSWORD)


class TestAuthEvents:

    def test_token_refreshed_never_refetches_profile(self, manager, auth, loader):
        manager.sign_in(ADMIN_EMAIL, PASSWORD)
        for _ in range(3):
            auth.emit('TOKEN_REFRESHED')
        assert loader.calls == 1
        assert manager.user.email == ADMIN_EMAIL

    def test_repeated_signed_in_is_ignored_when_user_loaded(self, manager, auth, loader):
        manager.sign_in(ADMIN_EMAIL, PASSWORD)
        auth.emit('SIGNED_IN')
        auth.emit('SIGNED_IN')
        assert loader.calls == 1

    def test_signed_in_without_user_loads_profile(self, manager, auth, loader):
        auth.sign_in_with_password({'email': CLIENTE_EMAIL, 'password': PASSWORD})
        assert loader.calls == 1
        assert manager.user.email == CLIENTE_EMAIL

    def test_signed_out_clears_state(self, manager, auth):
        manager.sign_in(ADMIN_EMAIL, PASSWORD)
        auth.emit('SIGNED_OUT')
        assert manager.user is None
        assert manager.has_initial_load is False

    def test_events_after_close_are_ignored(self, manager, auth, loader):
        manager.close()
        auth.sign_in_with_password({'email': ADMIN_EMAIL, 'password': PASSWORD})
        assert loader.calls == 0
        assert auth.listeners == []


class TestLoadUser:

    def test_load_is_not_reentrant(self, auth, admin_profile):
        auth.sign_in_with_password({'email': ADMIN_EMAIL, 'password': PASSWORD})
        loader = CountingLoader({admin_profile['id']: admin_profile}, delay=0.2)
        mgr = SessionManager(auth, loader)

        worker = threading.Thread(target=mgr.load_user)
        worker.start()
        time.sleep(0.05)
        mgr.load_user()
        worker.join()

        assert loader.calls == 1
        assert mgr.user.email == ADMIN_EMAIL

    def test_load_error_is_treated_as_logged_out(self, auth):
        auth.add_account('x@timeline.test', PASSWORD)
        auth.sign_in_with_password({'email': 'x@timeline.test', 'password': PASSWORD})

        def broken(user_id):
            raise RuntimeError('boom')

        mgr = SessionManager(auth, broken)
        assert mgr.load_user() is None
        assert mgr.loading is False

    def test_cached_state_skips_initial_load(self, auth, loader, admin_profile):
        store = {SessionManager.STATE_KEY: {'user': admin_profile, 'has_initial_load': True}}
        mgr = SessionManager(auth, loader, store=store)
        mgr.start()
        assert loader.calls == 0
        assert mgr.user.email == ADMIN_EMAIL
        assert mgr.current_user_for(admin_profile['id']) is mgr.user
        assert mgr.current_user_for('other') is None

    def test_bounded_initial_load_gives_up(self, auth, admin_profile):
        auth.sign_in_with_password({'email': ADMIN_EMAIL, 'password': PASSWORD})
        loader = CountingLoader({admin_profile['id']: admin_profile}, delay=0.5)
        mgr = SessionManager(auth, loader)

        assert mgr.start(timeout=0.05) is None
        assert mgr.loading is False

    def test_sign_in_refused_while_leftover_load_runs(self, auth, admin_profile):
        auth.sign_in_with_password({'email': ADMIN_EMAIL, 'password': PASSWORD})
        loader = CountingLoader({admin_profile['id']: admin_profile}, delay=0.5)
        mgr = SessionManager(auth, loader, lock_timeout=0.05)
        assert mgr.start(timeout=0.05) is None

        with pytest.raises(AuthError) as exc:
            mgr.sign_in(ADMIN_EMAIL, PASSWORD)
        assert exc.value.message == 'Sua sessão ainda está carregando. Tente novamente em instantes.'

        deadline = time.monotonic() + 5
        while mgr._load_lock.locked() and time.monotonic() < deadline:
            time.sleep(0.01)
        assert mgr.sign_in(ADMIN_EMAIL, PASSWORD) == '/admin/dashboard'

    def test_refresh_user_keeps_loading_flag(self, manager, loader, admin_profile):
        manager.sign_in(ADMIN_EMAIL, PASSWORD)
        admin_profile['nome'] = 'Admin Renomeado'
        assert manager.refresh_user().nome == 'Admin Renomeado'
        assert manager.loading is False
        assert loader.calls == 2


class TestVisibility:

    def test_session_present_keeps_user_without_refetch(self, manager, loader):
        manager.sign_in(ADMIN_EMAIL, PASSWORD)
        assert manager.on_visibility_change(True) is None
        assert manager.user.email == ADMIN_EMAIL
        assert loader.calls == 1

    def test_missing_session_logs_out(self, manager, auth):
        manager.sign_in(ADMIN_EMAIL, PASSWORD)
        auth.session = None
        assert manager.on_visibility_change(True) == '/login'
        assert manager.user is None

    def test_hidden_tab_does_nothing(self, manager, auth):
        manager.sign_in(ADMIN_EMAIL, PASSWORD)
        auth.session = None
        assert manager.on_visibility_change(False) is None
        assert manager.user is not None


class TestSignOut:

    def test_sign_out_returns_login_and_clears(self, manager):
        manager.sign_in(ADMIN_EMAIL, PASSWORD)
        assert manager.sign_out() == '/login'
        assert manager.user is None

    def test_backend_failure_is_not_raised(self, manager, auth, monkeypatch):
        manager.sign_in(ADMIN_EMAIL, PASSWORD)

        def fail(options=None):
            raise ConnectionError('offline')

        monkeypatch.setattr(auth, 'sign_out', fail)
        assert manager.sign_out() == '/login'
        assert manager.user is None


class TestHelpers:

    def test_map_auth_error(self):
        class Raw(Exception):
            def __init__(self, message, code=None):
                super().__init__(message)
                self.message = message
                self.code = code

        assert isinstance(map_auth_error(Raw('Invalid login credentials')), InvalidCredentialsError)
        assert isinstance(map_auth_error(Raw('Email not confirmed')), EmailNotConfirmedError)
        other = map_auth_error(Raw('Too many requests', code='over_request_rate_limit'))
        assert type(other) is AuthError
        assert other.code == 'over_request_rate_limit'

    def test_fetch_profile_reads_users_table(self, fake_supabase, admin_user):
        user = fetch_profile(fake_supabase, admin_user['id'])
        assert user.is_admin
        assert user.home_route == '/admin/dashboard'
