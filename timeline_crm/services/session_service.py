"""
Session manager: single source of truth for "who is logged in".

The manager wraps the Supabase auth client and keeps the loaded profile in an
injectable mapping (the Flask session in the web app), so a profile is fetched
once per login and not on every request, token refresh or tab refocus.
"""
import contextvars
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError

from flask import current_app, g, session
from supabase import AuthApiError, AuthSessionMissingError

from timeline_crm.errors import (
    ERROR_MESSAGES,
    AuthError,
    EmailNotConfirmedError,
    InvalidCredentialsError,
    TimelineCRMError,
    handle_supabase_error,
)
from timeline_crm.models import User, parse_record
from timeline_crm.services.supabase_service import get_supabase

logger = logging.getLogger(__name__)

LOGIN_ROUTE = '/login'

EVENT_SIGNED_IN = 'SIGNED_IN'
EVENT_SIGNED_OUT = 'SIGNED_OUT'
EVENT_TOKEN_REFRESHED = 'TOKEN_REFRESHED'


def map_auth_error(error):
    """Maps a backend auth failure to the user-facing error classes."""
    message = getattr(error, 'message', None) or str(error)
    code = getattr(error, 'code', None)
    if code == 'invalid_credentials' or 'Invalid login credentials' in message:
        return InvalidCredentialsError(code=code)
    if code == 'email_not_confirmed' or 'Email not confirmed' in message:
        return EmailNotConfirmedError(code=code)
    return AuthError(message or None, code=code)


def fetch_profile(client, user_id):
    """Loads the full ``users`` row for an auth user id."""
    try:
        res = client.table('users').select('*').eq('id', user_id).single().execute()
    except Exception as e:
        raise handle_supabase_error(e) from e
    return parse_record(User, res.data)


class SessionManager:
    STATE_KEY = 'timeline_auth'
    SIGN_IN_LOCK_TIMEOUT = 10

    def __init__(self, auth, profile_loader, store=None, navigate=None, lock_timeout=None):
        """
        :param auth: Supabase auth client (``client.auth``).
        :param profile_loader: callable(user_id) -> User.
        :param store: mutable mapping holding the cached state between requests.
        :param navigate: optional callable(route) invoked on redirects.
        :param lock_timeout: seconds ``sign_in`` waits for a running profile load.
        """
        self.auth = auth
        self.profile_loader = profile_loader
        self.store = store if store is not None else {}
        self.navigate = navigate
        self.lock_timeout = lock_timeout if lock_timeout is not None else self.SIGN_IN_LOCK_TIMEOUT
        self.loading = not self.has_initial_load
        self._load_lock = threading.Lock()
        self._subscription = None
        self._closed = False
        self._user = None

    # --- STATE ---

    @property
    def _state(self):
        return self.store.get(self.STATE_KEY) or {}

    def _write_state(self, **changes):
        state = dict(self._state)
        state.update(changes)
        self.store[self.STATE_KEY] = state

    @property
    def has_initial_load(self):
        return bool(self._state.get('has_initial_load'))

    @has_initial_load.setter
    def has_initial_load(self, value):
        self._write_state(has_initial_load=bool(value))

    @property
    def user(self):
        if self._user is None:
            cached = self._state.get('user')
            if cached:
                try:
                    self._user = parse_record(User, cached)
                except TimelineCRMError:
                    logger.warning("[Auth] Perfil em cache inválido, descartando")
                    self._write_state(user=None)
        return self._user

    @property
    def is_admin(self):
        return self.user is not None and self.user.is_admin

    def _set_user(self, user):
        self._user = user
        self._write_state(user=user.to_row() if user else None)

    def _clear(self):
        self._user = None
        self._write_state(user=None, has_initial_load=False)

    def _go(self, route):
        if self.navigate:
            self.navigate(route)
        return route

    def current_user_for(self, user_id):
        """Cached user when its id matches, used by the login manager."""
        user = self.user
        if user is not None and user.get_id() == str(user_id):
            return user
        return None

    # --- LIFECYCLE ---

    def start(self, timeout=None):
        """
        Subscribes to auth events and performs the initial profile load.
        With a timeout, the wait is bounded and on expiry the caller proceeds
        as if there were no session. The worker keeps running and holds the
        load lock until it finishes; what it writes to the Flask session after
        the response is sent is lost, and the next request loads again.
        """
        if self._subscription is None:
            self._subscription = self.auth.on_auth_state_change(self.handle_auth_event)

        if self.has_initial_load:
            self.loading = False
            return self.user

        if timeout is None:
            return self.load_user()

        ctx = contextvars.copy_context()
        executor = ThreadPoolExecutor(max_workers=1)
        future = executor.submit(ctx.run, self.load_user)
        executor.shutdown(wait=False)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            logger.warning("[Auth] Carregamento da sessão excedeu %ss, seguindo sem sessão", timeout)
            self.loading = False
            return None

    def close(self):
        self._closed = True
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    # --- PROFILE LOADING ---

    def load_user(self):
        if not self._load_lock.acquire(blocking=False):
            logger.debug("[Auth] Já está carregando usuário, ignorando...")
            return self._user

        try:
            if not self.has_initial_load:
                self.loading = True

            logger.debug("[Auth] Carregando usuário...")
            auth_user = self._get_auth_user()

            if auth_user:
                user = self.profile_loader(auth_user.id)
                self._set_user(user)
                logger.info("[Auth] Usuário carregado: %s", user.email)
            else:
                self._set_user(None)
                logger.debug("[Auth] Nenhum usuário autenticado")

            self.has_initial_load = True
        except Exception:
            logger.exception("[Auth] Erro ao carregar usuário")
            self._set_user(None)
        finally:
            self._load_lock.release()
            self.loading = False

        return self._user

    def refresh_user(self):
        """Re-fetches the profile (after profile edits) without touching ``loading``."""
        try:
            auth_user = self._get_auth_user()
            if auth_user:
                user = self.profile_loader(auth_user.id)
                self._set_user(user)
                logger.info("[Auth] Usuário atualizado: %s", user.email)
        except Exception:
            logger.exception("[Auth] Erro ao atualizar usuário")
        return self._user

    def _get_auth_user(self):
        try:
            response = self.auth.get_user()
        except AuthSessionMissingError:
            return None
        return response.user if response else None

    # --- SIGN IN / OUT ---

    def sign_in(self, email, password):
        """
        Authenticates and loads the profile. Returns the role's home route.
        Errors propagate as typed exceptions. Waits at most ``lock_timeout``
        for a profile load still running (e.g. one left behind by a bounded
        ``start``) and raises ``AuthError`` instead of blocking the request.
        """
        if not self._load_lock.acquire(timeout=self.lock_timeout):
            logger.warning("[Auth] Carregamento da sessão em andamento, login de %s recusado", email)
            raise AuthError(ERROR_MESSAGES['session_busy'])

        try:
            user = self._authenticate(email, password)
        finally:
            self._load_lock.release()

        logger.info("[Auth] Login: %s (%s)", user.email, user.role.value)
        return self._go(user.home_route)

    def _authenticate(self, email, password):
        try:
            response = self.auth.sign_in_with_password({'email': email, 'password': password})
        except AuthApiError as e:
            logger.warning("[Auth] Erro no login de %s: %s", email, e)
            raise map_auth_error(e) from e

        if not response or not response.user:
            raise AuthError()

        try:
            user = self.profile_loader(response.user.id)
        except TimelineCRMError:
            raise
        except Exception as e:
            raise handle_supabase_error(e) from e

        self._set_user(user)
        self.has_initial_load = True
        self.loading = False
        return user

    def sign_out(self):
        try:
            self.auth.sign_out()
        except Exception:
            logger.exception("[Auth] Erro no logout")
        self._clear()
        return self._go(LOGIN_ROUTE)

    # --- EVENTS ---

    def handle_auth_event(self, event, auth_session=None):
        event = getattr(event, 'value', event)
        logger.debug("[Auth] Auth state changed: %s", event)

        if self._closed:
            return

        if event == EVENT_SIGNED_IN:
            if self.user is not None:
                logger.debug("[Auth] Ignorando SIGNED_IN - usuário já carregado")
                return
            if self._load_lock.locked():
                logger.debug("[Auth] Ignorando SIGNED_IN - carregamento em andamento")
                return
            self.load_user()
        elif event == EVENT_SIGNED_OUT:
            self._clear()
            self.loading = False
        elif event == EVENT_TOKEN_REFRESHED:
            logger.debug("[Auth] Token atualizado - mantendo sessão")

    def on_visibility_change(self, visible):
        """
        Tab came back to the foreground: only checks that the backend session
        still exists. Returns the login route when the user was dropped.
        """
        if not visible or self.user is None:
            return None

        try:
            current = self.auth.get_session()
        except Exception:
            logger.exception("[Auth] Erro ao verificar sessão")
            return None

        if not current:
            logger.info("[Auth] Sessão expirou, fazendo logout")
            self._clear()
            return self._go(LOGIN_ROUTE)
        return None


def get_session_manager():
    """Request-scoped manager built on the request's Supabase client."""
    if 'session_manager' not in g:
        client = get_supabase()
        manager = SessionManager(
            client.auth,
            lambda user_id: fetch_profile(client, user_id),
            store=session,
            lock_timeout=current_app.config.get('SESSION_LOAD_TIMEOUT'),
        )
        manager.start(timeout=current_app.config.get('SESSION_LOAD_TIMEOUT'))
        g.session_manager = manager
    return g.session_manager


def close_session_manager(exception=None):
    manager = g.pop('session_manager', None)
    if manager is not None:
        manager.close()
