# -*- coding: utf-8 -*-
"""MultPanel - cross-cluster bulk operations backend for Proxmox VE"""

MULTPANEL_VERSION = '1.4.0'
