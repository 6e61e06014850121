"""SFTP upload abort and connection accounting, paramiko replaced by a fake client."""
import pytest

from multpanel.utils import ssh as ssh_module
from multpanel.utils.ssh import sftp_put, get_ssh_connection_stats, TransferAborted


class FakeSFTP:
    def __init__(self, chunks=4, chunk_size=100):
        self.chunks = chunks
        self.chunk_size = chunk_size
        self.removed = []
        self.closed = False
        self.stats_during_put = None

    def put(self, local_path, remote_path, callback=None, confirm=True):
        self.stats_during_put = get_ssh_connection_stats()
        total = self.chunks * self.chunk_size
        for i in range(1, self.chunks + 1):
            callback(i * self.chunk_size, total)

        class _Attrs:
            st_size = total
        return _Attrs()

    def remove(self, path):
        self.removed.append(path)

    def close(self):
        self.closed = True


class FakeSSHClient:
    def __init__(self, sftp):
        self.sftp = sftp
        self.closed = False

    def open_sftp(self):
        return self.sftp

    def close(self):
        self.closed = True


@pytest.fixture
def fake_sftp(monkeypatch):
    sftp = FakeSFTP()
    client = FakeSSHClient(sftp)
    monkeypatch.setattr(ssh_module, '_connect', lambda host, user, password=None, key_path=None, port=22, **kw: client)
    return sftp


def test_upload_returns_remote_size(fake_sftp):
    assert sftp_put('pve1', 'root', 'pw', '/tmp/x.iso', '/var/lib/vz/template/iso/x.iso') == 400
    assert fake_sftp.removed == []
    assert fake_sftp.closed


def test_abort_stops_upload_and_removes_partial_file(fake_sftp):
    polls = []

    def abort():
        polls.append(1)
        return len(polls) >= 2

    with pytest.raises(TransferAborted, match='200/400'):
        sftp_put('pve1', 'root', 'pw', '/tmp/x.iso', '/mnt/pve/nfs/template/iso/x.iso', abort=abort)
    assert fake_sftp.removed == ['/mnt/pve/nfs/template/iso/x.iso']
    assert fake_sftp.closed


def test_connection_counted_only_while_open(fake_sftp):
    sftp_put('pve1', 'root', 'pw', '/tmp/x.iso', '/tmp/remote.iso')
    assert fake_sftp.stats_during_put['active_password'] == 1
    assert fake_sftp.stats_during_put['total_active'] == 1
    assert get_ssh_connection_stats() == {'active_password': 0, 'active_ssh_key': 0, 'total_active': 0}
