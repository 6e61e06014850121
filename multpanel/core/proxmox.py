# -*- coding: utf-8 -*-
"""
MultPanel Proxmox API client - Layer 3
Ticket login + the few REST calls the bulk operations need.
"""

import ssl
import logging

import requests
import urllib3
from requests.adapters import HTTPAdapter
from urllib3.util.ssl_ import create_urllib3_context

from multpanel.constants import PROXMOX_API_TIMEOUT, ISO_TEMPLATE_SUBDIR

urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


class _NoHostnameCheckAdapter(HTTPAdapter):
    """Force-disable hostname verification so IPs work with self-signed certs"""
    def init_poolmanager(self, *args, **kwargs):
        ctx = create_urllib3_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        kwargs['ssl_context'] = ctx
        return super().init_poolmanager(*args, **kwargs)


class ProxmoxAPIError(Exception):
    pass


class ProxmoxClient:
    """short-lived client for one cluster, logs in lazily"""

    def __init__(self, cluster: dict, timeout: float = PROXMOX_API_TIMEOUT):
        self.cluster = cluster
        self.host = cluster['host']
        self.port = cluster.get('api_port') or 8006
        self.timeout = timeout
        self._ssl_verify = bool(cluster.get('ssl_verification', False))
        self._ticket = None
        self._csrf_token = None

    @property
    def base_url(self):
        return f"https://{self.host}:{self.port}/api2/json"

    def _create_session(self):
        session = requests.Session()
        session.verify = self._ssl_verify
        if not self._ssl_verify:
            session.mount('https://', _NoHostnameCheckAdapter())
        if self._ticket:
            session.cookies.set('PVEAuthCookie', self._ticket)
        if self._csrf_token:
            session.headers.update({'CSRFPreventionToken': self._csrf_token})
        return session

    def login(self):
        username = self.cluster['username']
        if '@' not in username:
            username = f"{username}@{self.cluster.get('realm') or 'pam'}"
        session = self._create_session()
        try:
            resp = session.post(f"{self.base_url}/access/ticket",
                                data={'username': username, 'password': self.cluster.get('password', '')},
                                timeout=self.timeout)
        except requests.exceptions.Timeout:
            raise ProxmoxAPIError(f"Timeout connecting to {self.host}")
        except requests.exceptions.SSLError:
            raise ProxmoxAPIError(f"SSL error connecting to {self.host}")
        except requests.exceptions.ConnectionError:
            raise ProxmoxAPIError(f"Cannot connect to {self.host}")
        if resp.status_code != 200:
            raise ProxmoxAPIError(f"Login to {self.host} failed: HTTP {resp.status_code}")
        data = (resp.json() or {}).get('data') or {}
        if not data.get('ticket'):
            raise ProxmoxAPIError('Failed to get Proxmox authentication ticket')
        self._ticket = data['ticket']
        self._csrf_token = data.get('CSRFPreventionToken')

    def _get(self, endpoint, **kwargs):
        if not self._ticket:
            self.login()
        kwargs.setdefault('timeout', self.timeout)
        try:
            resp = self._create_session().get(f"{self.base_url}{endpoint}", **kwargs)
        except requests.exceptions.RequestException as e:
            raise ProxmoxAPIError(f"GET {endpoint} on {self.host} failed: {e}")
        if resp.status_code != 200:
            raise ProxmoxAPIError(f"GET {endpoint} on {self.host} -> HTTP {resp.status_code}")
        return resp.json().get('data')

    def get_nodes(self) -> list:
        return self._get('/nodes') or []

    def pick_node(self, preferred=None) -> str:
        """preferred node if it exists and is online, else the first online one"""
        nodes = [n for n in self.get_nodes() if n.get('status') == 'online']
        names = [n.get('node') for n in nodes]
        if preferred and preferred in names:
            return preferred
        if not names:
            raise ProxmoxAPIError(f"No online nodes on {self.host}")
        return names[0]

    def list_isos(self, node: str, storage: str) -> list:
        return self._get(f'/nodes/{node}/storage/{storage}/content', params={'content': 'iso'}) or []

    def iso_exists(self, node: str, storage: str, filename: str) -> bool:
        volid_suffix = f"iso/{filename}"
        for item in self.list_isos(node, storage):
            if item.get('volid', '').endswith(volid_suffix):
                return True
        logging.debug(f"[Proxmox] {filename} not in {storage} on {self.host}/{node}")
        return False

    def storage_iso_dir(self, storage: str) -> str:
        """directory ISOs of this storage live in, from the storage config

        Only file based storages (dir, nfs, cifs, cephfs ...) have a path,
        block storages like lvm or rbd can't hold ISO images at all.
        """
        config = self._get(f'/storage/{storage}') or {}
        content = [c.strip() for c in (config.get('content') or '').split(',')]
        if 'iso' not in content:
            raise ProxmoxAPIError(f"Storage '{storage}' on {self.host} is not configured for ISO images")
        path = config.get('path')
        if not path:
            raise ProxmoxAPIError(f"Storage '{storage}' on {self.host} ({config.get('type', 'unknown')}) has no directory")
        return f"{path.rstrip('/')}/{ISO_TEMPLATE_SUBDIR}"
