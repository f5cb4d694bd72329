# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

from .response import ServiceResponse
from .waitlist_service import handle_submission, HONEYPOT_BODY
from .unsubscribe_service import handle_unsubscribe, read_unsubscribe_body
