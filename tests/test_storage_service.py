"""
Tests for the S3 storage service with a mocked boto3 client.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from services.storage_service import StorageDisabledError, StorageError, StorageService


def _client_error(code, operation='GetObject'):
    return ClientError({'Error': {'Code': code, 'Message': code}}, operation)


@pytest.fixture
def client():
    with patch('services.storage_service.boto3.client') as factory:
        mock = MagicMock()
        factory.return_value = mock
        yield mock


@pytest.fixture
def storage(client):
    return StorageService(enabled=True, endpoint_url='http://minio:9000', aws_region='us-east-1')


def _pages(*keys):
    paginator = MagicMock()
    paginator.paginate.return_value = [{'Contents': [{'Key': k, 'Size': 1} for k in keys]}]
    return paginator


class TestDisabled:
    def test_every_call_raises(self):
        storage = StorageService(enabled=False)
        assert storage.is_enabled() is False
        with pytest.raises(StorageDisabledError):
            storage.download_bytes('bucket', 'key')
        with pytest.raises(StorageDisabledError):
            storage.head('bucket', 'key')


class TestTransfers:
    def test_upload(self, storage, client):
        assert storage.upload('models', 'S1/current/lbph.zip', 'application/zip', b'zip') == 'S1/current/lbph.zip'
        client.put_object.assert_called_once_with(
            Bucket='models', Key='S1/current/lbph.zip', Body=b'zip', ContentType='application/zip')

    def test_upload_without_upsert_refuses_existing(self, storage, client):
        client.head_object.return_value = {'LastModified': datetime(2026, 1, 1, tzinfo=timezone.utc)}
        with pytest.raises(StorageError):
            storage.upload('models', 'k', 'application/zip', b'zip', upsert=False)
        client.put_object.assert_not_called()

    def test_upload_failure_wrapped(self, storage, client):
        client.put_object.side_effect = _client_error('AccessDenied', 'PutObject')
        with pytest.raises(StorageError):
            storage.upload('models', 'k', 'application/zip', b'zip')

    def test_download(self, storage, client):
        body = MagicMock()
        body.read.return_value = b'data'
        client.get_object.return_value = {'Body': body}
        assert storage.download_bytes('faces', 'S1/faces.zip') == b'data'

    def test_download_missing_returns_none(self, storage, client):
        client.get_object.side_effect = _client_error('NoSuchKey')
        assert storage.download_bytes('faces', 'S1/faces.zip') is None

    def test_download_error_raises(self, storage, client):
        client.get_object.side_effect = _client_error('AccessDenied')
        with pytest.raises(StorageError):
            storage.download_bytes('faces', 'S1/faces.zip')

    def test_client_cached_per_timeout(self, client):
        with patch('services.storage_service.boto3.client') as factory:
            factory.return_value = client
            storage = StorageService(enabled=True)
            storage.head('b', 'k')
            storage.head('b', 'k')
            storage.download_bytes('b', 'k', timeout=5)
        assert factory.call_count == 2


class TestHead:
    def test_existing(self, storage, client):
        stamp = datetime(2026, 1, 1, tzinfo=timezone.utc)
        client.head_object.return_value = {'LastModified': stamp}
        head = storage.head('faces', 'k')
        assert (head.exists, head.accessible, head.last_modified) == (True, True, stamp)

    def test_missing_is_accessible(self, storage, client):
        client.head_object.side_effect = _client_error('404', 'HeadObject')
        head = storage.head('faces', 'k')
        assert (head.exists, head.accessible) == (False, True)

    def test_forbidden_is_inaccessible(self, storage, client):
        client.head_object.side_effect = _client_error('403', 'HeadObject')
        head = storage.head('faces', 'k')
        assert (head.exists, head.accessible) == (False, False)


class TestListAndDelete:
    def test_list_paginates_and_slices(self, storage, client):
        client.get_paginator.return_value = _pages('S1/b', 'S1/a', 'S1/c')
        objects = storage.list('models', 'S1/', limit=2, offset=1)
        assert [o.key for o in objects] == ['S1/b', 'S1/c']
        assert objects[0].to_dict()['name'] == 'b'

    def test_delete_expands_prefix(self, storage, client):
        client.get_paginator.return_value = _pages('S1/current/lbph.zip', 'S1/current/old.zip')

        removed = storage.delete('models', ['S1/current/', 'S1/extra.txt', ''])

        assert removed == 3
        call = client.delete_objects.call_args
        keys = [item['Key'] for item in call.kwargs['Delete']['Objects']]
        assert keys == ['S1/current/lbph.zip', 'S1/current/old.zip', 'S1/extra.txt']

    def test_delete_nothing(self, storage, client):
        client.get_paginator.return_value = _pages()
        assert storage.delete('models', ['S1/current/']) == 0
        client.delete_objects.assert_not_called()
