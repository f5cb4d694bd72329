# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

from .admin import bp_admin
from .healthcheck import bp_healthcheck
from .unsubscribe import bp_unsubscribe
from .waitlist import bp_waitlist
