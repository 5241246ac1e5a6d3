import logging

from flask import current_app, g, session
from supabase import ClientOptions, acreate_client, create_client
from supabase_auth import SyncSupportedStorage

logger = logging.getLogger(__name__)


class FlaskSessionStorage(SyncSupportedStorage):
    """Keeps the Supabase auth session inside the signed Flask cookie session."""

    def __init__(self):
        self.storage = session

    def get_item(self, key):
        if key in self.storage:
            return self.storage[key]
        return None

    def set_item(self, key, value):
        self.storage[key] = value

    def remove_item(self, key):
        self.storage.pop(key, None)


def init_supabase(app):
    url = app.config.get('SUPABASE_URL')
    key = app.config.get('SUPABASE_KEY')

    if not url or not key:
        raise RuntimeError('SUPABASE_URL e SUPABASE_KEY são obrigatórios!')

    app.extensions['supabase'] = {'url': url, 'key': key}

    @app.teardown_appcontext
    def drop_supabase_client(exception=None):
        g.pop('supabase', None)

    logger.info("Supabase configured for %s", url)


def get_supabase():
    """
    Per-request client. Its auth storage is the Flask session, so PostgREST
    and Storage calls run with the logged user's JWT and RLS applies.
    """
    if 'supabase' not in g:
        settings = current_app.extensions['supabase']
        g.supabase = create_client(
            settings['url'],
            settings['key'],
            options=ClientOptions(
                storage=FlaskSessionStorage(),
                auto_refresh_token=False,
                persist_session=True,
            ),
        )
        _apply_stored_session(g.supabase)
    return g.supabase


def _apply_stored_session(client):
    # Restored sessions emit no auth event; the JWT header is set here
    try:
        current = client.auth.get_session()
    except Exception:
        logger.exception("Could not restore stored Supabase session")
        return
    if current and current.access_token:
        client.options.headers['Authorization'] = f'Bearer {current.access_token}'


async def create_async_supabase(url, key, access_token=None, refresh_token=None):
    """Async client, needed by the realtime channels."""
    client = await acreate_client(url, key)
    if access_token and refresh_token:
        await client.auth.set_session(access_token, refresh_token)
    return client


def create_detached_client():
    """
    Client with in-memory auth storage. Used for sign-ups made by an admin,
    so the new account's session never replaces the admin's own.
    """
    settings = current_app.extensions['supabase']
    return create_client(
        settings['url'],
        settings['key'],
        options=ClientOptions(auto_refresh_token=False, persist_session=False),
    )
