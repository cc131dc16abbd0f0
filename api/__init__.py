"""HTTP interface: data and action endpoints, triage conversations and change sessions."""

from api.app import build_in_memory_services, build_services, create_app, wire_services
from api.base import APIResponse, ErrorCodes, error_response, success_response
