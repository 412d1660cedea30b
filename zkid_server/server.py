"""
server.py
----------
Flask web server exposing the identity sign-in endpoints.

Endpoints:
- GET  /api/sign-in              : issue an authorization request
- POST /api/callback?sessionId=  : submit the proof token, verify
- GET  /api/verifier-key         : public key used to sign issued requests

Static files are served from the configured directory at the root path.
Served over HTTPS when a certificate and key are present.
"""

import logging
import os
import ssl

from flask import Flask, Response, current_app, jsonify, request

from zkid_server import crypto_utils, protocol, storage
from zkid_server.config import ServerConfig, load_config
from zkid_server.verifier import VerificationError, build_verifier


def create_app(config: ServerConfig = None, store: storage.SessionStore = None,
               verifier=None, signing_key=None) -> Flask:
    if config is None:
        config = load_config()
    if store is None:
        store = storage.make_store(config.db_path, config.session_ttl)
    if verifier is None:
        verifier = build_verifier(config)
    if signing_key is None:
        signing_key = crypto_utils.load_signing_key(config.signing_key_file)

    app = Flask(__name__, static_folder=os.path.abspath(config.static_dir), static_url_path="")

    @app.route("/", methods=["GET"])
    def index():
        return app.send_static_file("index.html")

    @app.route("/api/sign-in", methods=["GET"])
    def sign_in():
        """Issue an authorization request for the sign-in session."""
        issued = protocol.issue_request(config, store)
        body = issued.request.to_dict()
        resp = jsonify(body)
        resp.headers["X-Request-Signature"] = crypto_utils.sign_payload(signing_key, body)
        return resp

    @app.route("/api/callback", methods=["POST"])
    def callback():
        """
        Verify a proof token.
        Query: sessionId=<id>
        Body: raw JWZ token
        """
        session_id = request.args.get("sessionId")
        if not session_id:
            return jsonify({"error": "Missing sessionId"}), 400
        token = request.get_data(as_text=True).strip()

        response = protocol.handle_callback(store, verifier, session_id, token)
        return Response(
            f"user with ID: {response.from_} Successfully authenticated",
            status=200,
            mimetype="text/plain",
        )

    @app.route("/api/verifier-key", methods=["GET"])
    def verifier_key():
        return jsonify({
            "alg": "Ed25519",
            "key": crypto_utils.base64url_encode(bytes(signing_key.verify_key)),
        })

    @app.errorhandler(storage.SessionNotFound)
    def session_not_found(e):
        return jsonify({"error": "Unknown session", "sessionId": e.session_id}), 404

    @app.errorhandler(storage.SessionAlreadyConsumed)
    def session_consumed(e):
        return jsonify({"error": "Session already used", "sessionId": e.session_id}), 409

    @app.errorhandler(storage.SessionExpired)
    def session_expired(e):
        return jsonify({"error": "Session expired", "sessionId": e.session_id}), 410

    @app.errorhandler(VerificationError)
    def verification_failed(e):
        current_app.logger.error(
            "Verification failed for session %s: %s", request.args.get("sessionId"), e
        )
        return Response(str(e), status=500, mimetype="text/plain")

    return app


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = load_config()
    app = create_app(config)

    ctx = None
    if config.tls_enabled:
        ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ctx.load_cert_chain(certfile=config.cert_file, keyfile=config.key_file)
    else:
        logging.getLogger(__name__).warning("TLS certificate not found, serving plain HTTP")
    app.run(host=config.host, port=config.port, ssl_context=ctx, threaded=True)


if __name__ == "__main__":
    main()
