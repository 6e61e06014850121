# -*- coding: utf-8 -*-
"""domain exceptions - mapped to http codes in api/helpers.py"""


class ValidationError(Exception):
    """Bad submission, nothing was created."""


class UnknownOperationError(Exception):
    """No bulk operation registered under that kind."""


class JobNotFoundError(Exception):
    """Job id unknown (expired or never existed)."""


class InvalidTransition(Exception):
    """Job status change that would go backwards."""


class PreconditionError(Exception):
    """Fatal: the whole job is meaningless, abort before touching any target."""


class ClusterNotFoundError(Exception):
    pass


class SSHKeyError(Exception):
    """Service key pair missing or unusable."""
