"""
Realtime change feeds.

The Supabase realtime client is async-only, so each feed owns a daemon thread
running a private event loop. Change payloads are normalized to
``{'eventType', 'new', 'old'}`` and pushed into a ``queue.Queue`` that the
synchronous side (a ``TimelineTracker`` or ``SystemConfigTracker``) drains.
"""
import asyncio
import logging
import queue
import threading

from timeline_crm.services.supabase_service import create_async_supabase

logger = logging.getLogger(__name__)

SUBSCRIBE_TIMEOUT = 10


def normalize_change(payload):
    """Accepts both the flat and the ``data``-wrapped postgres_changes payloads."""
    if not isinstance(payload, dict):
        return None
    if 'eventType' in payload:
        return {
            'eventType': payload.get('eventType'),
            'new': payload.get('new') or {},
            'old': payload.get('old') or {},
        }
    data = payload.get('data') or {}
    event_type = data.get('type') or data.get('eventType')
    return {
        'eventType': getattr(event_type, 'value', event_type),
        'new': data.get('record') or {},
        'old': data.get('old_record') or {},
    }


def drain(inbox, timeout=None):
    """
    Yields every payload queued in ``inbox``. With a timeout, waits that long
    for the first one; the rest are taken without blocking.
    """
    block = timeout is not None
    while True:
        try:
            payload = inbox.get(block=block, timeout=timeout)
        except queue.Empty:
            return
        yield payload
        block = False


class RealtimeFeed:

    def __init__(self, url, key, channel_name, table, filter=None, event='*',
                 access_token=None, refresh_token=None, inbox=None,
                 client_factory=create_async_supabase):
        self.url = url
        self.key = key
        self.channel_name = channel_name
        self.table = table
        self.filter = filter
        self.event = event
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.inbox = inbox if inbox is not None else queue.Queue()
        self.client_factory = client_factory

        self._loop = None
        self._thread = None
        self._client = None
        self._channel = None
        self._ready = threading.Event()
        self._error = None

    @classmethod
    def for_project_timeline(cls, url, key, projeto_id, **kwargs):
        return cls(
            url, key,
            channel_name=f'projeto-timeline-{projeto_id}',
            table='projeto_timeline',
            filter=f'projeto_id=eq.{projeto_id}',
            **kwargs
        )

    @classmethod
    def for_system_config(cls, url, key, **kwargs):
        return cls(url, key, channel_name='sistema_config_changes', table='sistema_config', **kwargs)

    # --- LIFECYCLE ---

    def start(self, timeout=SUBSCRIBE_TIMEOUT):
        """Starts the loop thread and blocks until the channel is subscribed."""
        if self._thread is not None:
            return self
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name=self.channel_name, daemon=True)
        self._thread.start()

        if not self._ready.wait(timeout):
            self.stop()
            raise TimeoutError(f"Realtime: inscrição em {self.channel_name} excedeu {timeout}s")
        if self._error is not None:
            error = self._error
            self.stop()
            raise error
        return self

    def stop(self, timeout=5):
        loop, thread = self._loop, self._thread
        if loop is None or thread is None:
            return
        if not loop.is_closed():
            future = asyncio.run_coroutine_threadsafe(self._unsubscribe(), loop)
            try:
                future.result(timeout)
            except Exception:
                logger.exception("[Realtime] Erro ao cancelar inscrição em %s", self.channel_name)
            loop.call_soon_threadsafe(loop.stop)
        thread.join(timeout)
        self._thread = None
        self._loop = None
        logger.debug("[Realtime] Canal %s encerrado", self.channel_name)

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.stop()

    # --- LOOP THREAD ---

    def _run(self):
        loop = self._loop
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(self._subscribe())
        except Exception as e:
            logger.exception("[Realtime] Falha ao inscrever em %s", self.channel_name)
            self._error = e
            loop.close()
            self._ready.set()
            return

        self._ready.set()
        try:
            loop.run_forever()
        finally:
            loop.close()

    async def _subscribe(self):
        self._client = await self.client_factory(
            self.url, self.key, access_token=self.access_token, refresh_token=self.refresh_token
        )
        channel = self._client.channel(self.channel_name)
        channel.on_postgres_changes(
            self.event,
            schema='public',
            table=self.table,
            filter=self.filter,
            callback=self._on_change,
        )
        await channel.subscribe()
        self._channel = channel
        logger.info("[Realtime] Inscrito em %s", self.channel_name)

    async def _unsubscribe(self):
        if self._client is not None and self._channel is not None:
            await self._client.remove_channel(self._channel)
            self._channel = None

    def _on_change(self, payload):
        change = normalize_change(payload)
        if change is None or not change['eventType']:
            logger.debug("[Realtime] Payload ignorado em %s: %r", self.channel_name, payload)
            return
        self.inbox.put(change)
