"""Flask application factory for the certificate-serving HTTPS endpoint."""

from dotenv import load_dotenv
load_dotenv()  # Load .env file if present (already gitignored)

from flask import Flask, jsonify

from certs.source import CertificateSource

VERSION = "0.1.0"


def create_app(source: CertificateSource | None = None):
    """Create and configure the Flask application.

    Args:
        source: Certificate source whose current certificate is reported
            under ``/certificate``.
    """
    app = Flask(__name__)
    app.config["CERT_SOURCE"] = source

    from web.routes.certificates import bp as certificates_bp

    app.register_blueprint(certificates_bp)

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error"}), 500

    @app.route("/health")
    def health_check():
        return jsonify({"status": "healthy", "version": VERSION}), 200

    return app
