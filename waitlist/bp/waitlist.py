# Copyright (c) 2025 Damien Boisvert (AlphaGameDeveloper)
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

from flask import Blueprint, g, jsonify, make_response, request

from ..abuse import InboundRequest, allowed_origin, normalize_origin
from ..config import get_config
from ..services import handle_submission
from ..state import get_mailer, get_state

bp_waitlist = Blueprint('waitlist', __name__)

@bp_waitlist.route("/waitlist", methods=["POST", "OPTIONS"])
def submit():
    config = get_config()

    if request.method == "OPTIONS":
        origin = allowed_origin(request.headers.get("Origin", ""), normalize_origin(request.host_url), config)
        if origin is None:
            return jsonify({"status": "error", "code": "forbidden_origin"}), 403
        # CORS headers are added by flask-cors
        return make_response("", 204)

    state = get_state()
    result = handle_submission(
        InboundRequest.from_flask(request, g.get("request_id", "-")),
        config,
        state.store,
        get_mailer(config),
        state.limiter,
        notifier=state.notifier,
    )
    return jsonify(result.body), result.status
