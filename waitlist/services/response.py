# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

from dataclasses import dataclass, field
from typing import Any, Dict

@dataclass
class ServiceResponse:
    """Status and JSON body for a handled request."""
    status: int
    body: Dict[str, Any] = field(default_factory=dict)
