# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

from flask import Blueprint, g, jsonify, request

from ..abuse import InboundRequest, Rejected, client_ip
from ..config import get_config
from ..services import handle_unsubscribe, read_unsubscribe_body
from ..services.unsubscribe_service import TOKEN_FIELDS
from ..state import get_state

bp_unsubscribe = Blueprint('unsubscribe', __name__)

@bp_unsubscribe.route("/unsubscribe", methods=["GET", "POST"])
def unsubscribe():
    """Apply a signed unsubscribe link. GET takes query parameters, POST a JSON body."""
    if request.method == "POST":
        try:
            params = read_unsubscribe_body(InboundRequest.from_flask(request, g.get("request_id", "-")))
        except Rejected as e:
            return jsonify({"status": "error", "error": e.code}), e.status
    else:
        params = {name: request.args.get(name, "").strip() for name in TOKEN_FIELDS}

    state = get_state()
    result = handle_unsubscribe(
        params,
        client_ip(request.headers, request.remote_addr),
        get_config(),
        state.store,
        state.invalid_attempts,
    )
    return jsonify(result.body), result.status
