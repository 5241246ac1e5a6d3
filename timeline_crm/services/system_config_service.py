import logging
import queue

from timeline_crm.errors import NotFoundError, TimelineCRMError, handle_supabase_error
from timeline_crm.models import SISTEMA_CONFIG_ID, SistemaConfig, parse_record
from timeline_crm.services.realtime_service import drain
from timeline_crm.services.storage_service import StorageService, upload_system_image
from timeline_crm.utils import get_now_iso

logger = logging.getLogger(__name__)

TABLE = 'sistema_config'


def merge_config_update(config, payload):
    """Applies a realtime UPDATE of the singleton row; other events are ignored."""
    if not payload or payload.get('eventType') != 'UPDATE':
        return config
    new = payload.get('new') or {}
    if new.get('id', SISTEMA_CONFIG_ID) != SISTEMA_CONFIG_ID:
        return config

    row = config.to_row() if config is not None else {}
    row.update(new)
    try:
        return parse_record(SistemaConfig, row)
    except TimelineCRMError:
        logger.warning("Atualização de configuração inválida ignorada")
        return config


class SystemConfigService:

    def __init__(self, client, storage=None):
        self.client = client
        self.storage = storage or StorageService(client)

    def get(self):
        """Loads the singleton, creating it on first use."""
        try:
            res = self.client.table(TABLE).select('*').eq('id', SISTEMA_CONFIG_ID).single().execute()
            return parse_record(SistemaConfig, res.data)
        except Exception as e:
            error = handle_supabase_error(e)
            if not isinstance(error, NotFoundError):
                raise error from e

        logger.info("Configuração do sistema não encontrada, criando registro padrão")
        try:
            res = self.client.table(TABLE).insert({'id': SISTEMA_CONFIG_ID}).execute()
        except Exception as e:
            raise handle_supabase_error(e) from e
        return parse_record(SistemaConfig, res.data[0] if res.data else None)

    def update_logo(self, file, user_id):
        return self._update_image('logo', file, user_id)

    def update_favicon(self, file, user_id):
        return self._update_image('favicon', file, user_id)

    def _update_image(self, kind, file, user_id):
        uploaded = upload_system_image(self.storage, file, kind)
        self.get()
        updates = {
            f'{kind}_url': uploaded['url'],
            f'{kind}_storage_path': uploaded['path'],
            'updated_at': get_now_iso(),
            'updated_by': user_id,
        }
        try:
            res = self.client.table(TABLE).update(updates).eq('id', SISTEMA_CONFIG_ID).execute()
        except Exception as e:
            raise handle_supabase_error(e) from e

        logger.info("%s do sistema atualizado por %s", kind.capitalize(), user_id)
        return parse_record(SistemaConfig, res.data[0] if res.data else None)


class SystemConfigTracker:
    """Current system configuration, kept in sync by realtime payloads pushed into ``inbox``."""

    def __init__(self, config=None, inbox=None):
        self.config = config
        self.inbox = inbox if inbox is not None else queue.Queue()

    def load(self, service):
        self.config = service.get()
        return self.config

    def apply(self, payload):
        self.config = merge_config_update(self.config, payload)
        return self.config

    def poll(self, timeout=None):
        """Applies every queued payload; returns how many changed the configuration."""
        changed = 0
        for payload in drain(self.inbox, timeout):
            before = self.config
            if self.apply(payload) is not before:
                changed += 1
        return changed
