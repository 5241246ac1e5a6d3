"""
Attachment registrar: files and external links attached to a timeline step.

Uploaded files live in the private ``arquivos`` bucket and are served through
short-lived signed URLs; links are plain metadata rows without storage.
"""
import logging

from timeline_crm.errors import (
    FileTooLargeError,
    InvalidFileTypeError,
    InvalidUrlError,
    handle_supabase_error,
)
from timeline_crm.models import BUCKET_ARQUIVOS, BUCKET_LINKS, Arquivo, TipoArquivo, parse_record, parse_records
from timeline_crm.services.storage_service import (
    SIGNED_URL_EXPIRES_IN,
    StorageService,
    read_upload,
    upload_project_file,
)
from timeline_crm.utils import as_text, is_valid_file_size, is_valid_url

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES = {
    'application/pdf': TipoArquivo.PDF,
    'application/msword': TipoArquivo.DOC,
    'application/vnd.openxmlformats-officedocument.wordprocessingml.document': TipoArquivo.DOCX,
    'application/vnd.ms-excel': TipoArquivo.XLSX,
    'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet': TipoArquivo.XLSX,
    'text/csv': TipoArquivo.CSV,
}


def detect_file_type(mimetype):
    return ALLOWED_MIME_TYPES.get((mimetype or '').split(';')[0].strip().lower())


class AttachmentRegistrar:
    TABLE = 'arquivos'

    def __init__(self, client, storage=None):
        self.client = client
        self.storage = storage or StorageService(client)

    def list(self, projeto_timeline_id):
        try:
            res = self.client.table(self.TABLE).select('*') \
                .eq('projeto_timeline_id', projeto_timeline_id) \
                .order('created_at', desc=True) \
                .execute()
        except Exception as e:
            raise handle_supabase_error(e) from e

        return [self._with_signed_url(arquivo) for arquivo in parse_records(Arquivo, res.data)]

    def get(self, arquivo_id):
        try:
            res = self.client.table(self.TABLE).select('*').eq('id', arquivo_id).single().execute()
        except Exception as e:
            raise handle_supabase_error(e) from e
        return parse_record(Arquivo, res.data)

    def _with_signed_url(self, arquivo):
        if arquivo.is_link or not (arquivo.storage_path and arquivo.bucket_name):
            return arquivo
        try:
            url = self.storage.get_signed_url(arquivo.bucket_name, arquivo.storage_path, SIGNED_URL_EXPIRES_IN)
        except Exception:
            logger.exception("Erro ao gerar URL assinada para %s", arquivo.id)
            return arquivo
        return arquivo.model_copy(update={'storage_url': url})

    def upload(self, file, projeto_timeline_id, uploaded_by):
        """
        Validates type and size locally, stores the object, then writes the
        metadata row. A failure after the storage write leaves the object behind.
        """
        tipo = detect_file_type(file.mimetype)
        if tipo is None:
            raise InvalidFileTypeError()

        data, size = read_upload(file)
        if not is_valid_file_size(size):
            raise FileTooLargeError()

        uploaded = upload_project_file(self.storage, data, file.filename, projeto_timeline_id, file.mimetype)

        row = {
            'projeto_timeline_id': projeto_timeline_id,
            'nome': file.filename,
            'tipo': tipo.value,
            'tamanho': size,
            'storage_path': uploaded['path'],
            'storage_url': uploaded['url'],
            'bucket_name': BUCKET_ARQUIVOS,
            'uploaded_by': uploaded_by,
        }
        arquivo = self._insert(row)
        logger.info(
            "Arquivo %s enviado para etapa %s", arquivo.nome, projeto_timeline_id, extra={'user_id': uploaded_by}
        )
        return arquivo

    def add_link(self, url, projeto_timeline_id, uploaded_by, nome=None):
        url = as_text(url)
        if not is_valid_url(url):
            raise InvalidUrlError()

        row = {
            'projeto_timeline_id': projeto_timeline_id,
            'nome': nome or url,
            'tipo': TipoArquivo.LINK.value,
            'storage_url': url,
            'bucket_name': BUCKET_LINKS,
            'uploaded_by': uploaded_by,
        }
        arquivo = self._insert(row)
        logger.info("Link %s adicionado à etapa %s", url, projeto_timeline_id, extra={'user_id': uploaded_by})
        return arquivo

    def _insert(self, row):
        try:
            res = self.client.table(self.TABLE).insert(row).execute()
        except Exception as e:
            raise handle_supabase_error(e) from e
        return parse_record(Arquivo, res.data[0] if res.data else None)

    def remove(self, arquivo_id):
        """Deletes the storage object (best effort) and then the metadata row."""
        arquivo = self.get(arquivo_id)

        if not arquivo.is_link and arquivo.storage_path and arquivo.bucket_name:
            try:
                self.storage.delete_file(arquivo.bucket_name, arquivo.storage_path)
            except Exception:
                logger.exception("Erro ao deletar arquivo do storage: %s", arquivo.storage_path)

        try:
            self.client.table(self.TABLE).delete().eq('id', arquivo_id).execute()
        except Exception as e:
            raise handle_supabase_error(e) from e
        logger.info("Arquivo %s removido", arquivo_id)
        return arquivo
