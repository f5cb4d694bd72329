# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

from .emailmanager import (
    Mailer,
    MockSender,
    OutgoingEmail,
    ResendSender,
    SMTPManager,
    SMTPSender,
    SendResult,
    get_email_provider,
    render_welcome,
)
