import logging
import time

from werkzeug.utils import secure_filename

from timeline_crm.errors import FileTooLargeError, InvalidFileTypeError, handle_supabase_error
from timeline_crm.models import BUCKET_ARQUIVOS, BUCKET_SISTEMA
from timeline_crm.utils import is_valid_file_size

logger = logging.getLogger(__name__)

SIGNED_URL_EXPIRES_IN = 3600  # 1 hora

SYSTEM_IMAGE_LIMITS = {
    'logo': 2 * 1024 * 1024,
    'favicon': 500 * 1024,
}


def read_upload(file):
    """Returns (bytes, size) of a werkzeug FileStorage without leaving the cursor moved."""
    file.seek(0)
    data = file.read()
    file.seek(0)
    return data, len(data)


def safe_filename(filename):
    return secure_filename(filename or '') or 'arquivo'


class StorageService:
    """Thin wrapper over Supabase Storage buckets."""

    def __init__(self, client):
        self.client = client

    def _bucket(self, bucket):
        return self.client.storage.from_(bucket)

    def upload_file(self, data, bucket, path, content_type=None):
        """
        Uploads bytes to ``bucket/path``. Returns {'path', 'url'}: public
        buckets get the public URL, the others a signed URL.
        """
        options = {'cache-control': '3600', 'upsert': 'false'}
        if content_type:
            options['content-type'] = content_type
        try:
            self._bucket(bucket).upload(path, data, options)
        except Exception as e:
            logger.error("Erro no upload para %s/%s: %s", bucket, path, e)
            raise handle_supabase_error(e) from e

        if bucket == BUCKET_SISTEMA:
            url = self.get_public_url(bucket, path)
        else:
            url = self.get_signed_url(bucket, path)
        return {'path': path, 'url': url}

    def get_public_url(self, bucket, path):
        return self._bucket(bucket).get_public_url(path)

    def get_signed_url(self, bucket, path, expires_in=SIGNED_URL_EXPIRES_IN):
        try:
            res = self._bucket(bucket).create_signed_url(path, expires_in)
        except Exception as e:
            raise handle_supabase_error(e) from e
        return res.get('signedUrl') or res.get('signedURL')

    def delete_file(self, bucket, path):
        try:
            self._bucket(bucket).remove([path])
        except Exception as e:
            raise handle_supabase_error(e) from e

    def list_files(self, bucket, path=''):
        try:
            return self._bucket(bucket).list(path, {'limit': 100, 'offset': 0})
        except Exception as e:
            raise handle_supabase_error(e) from e

    def move_file(self, bucket, from_path, to_path):
        try:
            self._bucket(bucket).move(from_path, to_path)
        except Exception as e:
            raise handle_supabase_error(e) from e

    def download_file(self, bucket, path):
        try:
            return self._bucket(bucket).download(path)
        except Exception as e:
            raise handle_supabase_error(e) from e


def build_project_file_path(projeto_timeline_id, filename):
    timestamp = int(time.time() * 1000)
    return f"projetos/{projeto_timeline_id}/{timestamp}_{safe_filename(filename)}"


def upload_project_file(storage, data, filename, projeto_timeline_id, content_type=None):
    path = build_project_file_path(projeto_timeline_id, filename)
    return storage.upload_file(data, BUCKET_ARQUIVOS, path, content_type)


def upload_system_image(storage, file, kind):
    """Uploads the logo or favicon to the public ``sistema`` bucket."""
    if kind not in SYSTEM_IMAGE_LIMITS:
        raise ValueError(f"Tipo de imagem desconhecido: {kind}")

    if not (file.mimetype or '').startswith('image/'):
        raise InvalidFileTypeError('Arquivo deve ser uma imagem')

    data, size = read_upload(file)
    max_size = SYSTEM_IMAGE_LIMITS[kind]
    if not is_valid_file_size(size, max_size):
        raise FileTooLargeError(f"Arquivo muito grande. Máximo: {max_size / 1024 / 1024:g}MB")

    filename = safe_filename(file.filename)
    ext = filename.rsplit('.', 1)[1].lower() if '.' in filename else 'png'
    path = f"{kind}/{kind}_{int(time.time() * 1000)}.{ext}"
    return storage.upload_file(data, BUCKET_SISTEMA, path, file.mimetype)
