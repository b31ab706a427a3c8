"""Approval workflow blueprint."""
from flask import Blueprint

workflows_bp = Blueprint("workflows", __name__, url_prefix="/workflows")

from . import routes  # noqa: E402,F401
