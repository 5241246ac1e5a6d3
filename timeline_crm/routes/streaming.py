"""
Server-sent-events plumbing shared by the realtime streams.

A view builds a ``RealtimeFeed`` writing into a tracker's inbox and hands
both to ``event_stream``; the generator opens the feed, sends a snapshot,
then sends a new one each time ``poll`` reports changes (a keep-alive
comment otherwise). Closing the response stops the feed.
"""
import json
import logging

from flask import Response, stream_with_context

from timeline_crm.errors import ERROR_MESSAGES

logger = logging.getLogger(__name__)


def sse_event(name, data):
    return f"event: {name}\ndata: {json.dumps(data, ensure_ascii=False, default=str)}\n\n"


def feed_tokens(client):
    """Access and refresh tokens of the request's session, for the realtime client."""
    stored = client.auth.get_session()
    return {
        'access_token': stored.access_token if stored else None,
        'refresh_token': stored.refresh_token if stored else None,
    }


def event_stream(feed, name, snapshot, poll, poll_seconds):
    def generate():
        try:
            feed.start()
        except Exception:
            logger.exception("[Realtime] Falha ao abrir canal %s", name)
            yield sse_event('erro', {'mensagem': ERROR_MESSAGES['network']})
            return

        try:
            yield sse_event(name, snapshot())
            while True:
                if poll(timeout=poll_seconds):
                    yield sse_event(name, snapshot())
                else:
                    yield ': keep-alive\n\n'
        finally:
            feed.stop()
            logger.debug("[Realtime] Stream %s encerrado", name)

    return Response(
        stream_with_context(generate()),
        mimetype='text/event-stream',
        headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'},
    )
