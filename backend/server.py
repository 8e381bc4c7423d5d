#!/usr/bin/env python3
"""
API server for browsing and exporting Cursor chat history.
"""

import argparse
import logging
import unicodedata
from pathlib import Path
from urllib.parse import quote

from flask import Flask, Response, jsonify, request, send_from_directory
from flask_cors import CORS

from chat_formatter import EXPORTERS, export_filename
from config_manager import ConfigManager, ConfigValidationError
from conversation_service import ConversationService
from kv_store import StoreNotFoundError
from log_sink import configure_file_log
from shadow_store import ShadowStoreManager
from workspace_locator import WorkspaceLocator

logger = logging.getLogger(__name__)


def content_disposition(filename: str, fallback: str) -> str:
    """
    Attachment header value for ``filename``.

    Header values must be Latin-1, so a non-ASCII name is sent as an RFC 5987
    ``filename*`` parameter next to an ASCII ``filename`` for older clients.
    """
    if filename.isascii():
        return f'attachment; filename="{filename}"'

    simple = unicodedata.normalize("NFKD", filename).encode("ascii", "ignore").decode("ascii")
    simple = simple.replace('"', "_").replace("\\", "_").strip()
    if not simple or simple.startswith("."):
        simple = fallback
    return f"attachment; filename=\"{simple}\"; filename*=UTF-8''{quote(filename, safe='!#$&+^`|~')}"


def create_app(config_manager=None, shadow_store=None, service=None, static_folder='../frontend/build'):
    app = Flask(__name__, static_folder=static_folder)
    CORS(app)

    config_manager = config_manager or ConfigManager()
    locator = WorkspaceLocator(config_manager)
    shadow_store = shadow_store or ShadowStoreManager(locator, config_manager)
    service = service or ConversationService(shadow_store, locator)

    app.extensions["cursor_view"] = {
        "config_manager": config_manager,
        "shadow_store": shadow_store,
        "service": service,
    }

    ############################################################################
    # Configuration
    ############################################################################
    @app.route('/api/config', methods=['GET'])
    def get_config():
        try:
            return jsonify(config_manager.get_config())
        except Exception as e:
            logger.error(f"Failed to read config: {e}", exc_info=True)
            return jsonify({"error": "Failed to read config"}), 500

    @app.route('/api/config', methods=['POST'])
    def save_config():
        data = request.get_json(silent=True)
        if not isinstance(data, dict):
            return jsonify({"error": "Request body must be a JSON object"}), 400

        try:
            projects = config_manager.set_allowed_projects(data.get('allowedProjects'))
            if 'workspacePath' in data:
                config_manager.set_workspace_path(data['workspacePath'])
        except ConfigValidationError as e:
            return jsonify({"error": str(e)}), 400
        except Exception as e:
            logger.error(f"Failed to save config: {e}", exc_info=True)
            return jsonify({"error": "Failed to save config"}), 500

        if projects is None:
            return jsonify({"error": "Failed to save config"}), 500
        return jsonify({"success": True, "config": config_manager.get_config()})

    @app.route('/api/refresh-db', methods=['POST'])
    def refresh_db():
        try:
            shadow_store.invalidate()
            return jsonify({"success": True, "message": "Database refreshed"})
        except Exception as e:
            logger.error(f"Failed to refresh database: {e}", exc_info=True)
            return jsonify({"error": "Failed to refresh database"}), 500

    ############################################################################
    # Conversations
    ############################################################################
    @app.route('/api/workspaces', methods=['GET'])
    def get_workspaces():
        try:
            return jsonify({"workspaces": service.list_workspaces()})
        except Exception as e:
            logger.error(f"Failed to get workspaces: {e}", exc_info=True)
            return jsonify({"error": "Failed to get workspaces"}), 500

    @app.route('/api/workspaces/<workspace_id>/tabs', methods=['GET'])
    def get_tabs(workspace_id):
        try:
            tabs = service.list_tabs(workspace_id, request.args.get('q'))
            return jsonify({"tabs": tabs})
        except StoreNotFoundError:
            return jsonify({"error": "Global storage not found"}), 404
        except Exception as e:
            logger.error(f"Failed to get workspace tabs: {e}", exc_info=True)
            return jsonify({"error": "Failed to get workspace tabs"}), 500

    @app.route('/api/workspaces/<workspace_id>/tabs/<tab_id>', methods=['GET'])
    def get_tab(workspace_id, tab_id):
        try:
            tab = service.get_tab(tab_id)
        except StoreNotFoundError:
            return jsonify({"error": "Database not found"}), 404
        except Exception as e:
            logger.error(f"Failed to get chat details: {e}", exc_info=True)
            return jsonify({"error": "Failed to get chat details"}), 500

        if tab is None:
            return jsonify({"error": "Chat not found"}), 404
        return jsonify(tab.to_dict())

    @app.route('/api/workspaces/<workspace_id>/tabs/<tab_id>/export', methods=['GET'])
    def export_tab(workspace_id, tab_id):
        format_type = request.args.get('format', 'markdown').lower()
        if format_type not in EXPORTERS:
            return jsonify({"error": f"Unsupported export format: {format_type}"}), 400

        try:
            tab = service.get_tab(tab_id)
        except StoreNotFoundError:
            return jsonify({"error": "Database not found"}), 404
        except Exception as e:
            logger.error(f"Error in export_tab: {e}", exc_info=True)
            return jsonify({"error": "Failed to export chat"}), 500

        if tab is None:
            logger.warning(f"Chat with ID {tab_id} not found for export")
            return jsonify({"error": "Chat not found"}), 404

        convert, extension, mimetype = EXPORTERS[format_type]
        return Response(
            convert(tab),
            mimetype=mimetype,
            headers={
                "Content-Disposition": content_disposition(
                    export_filename(tab, extension), f"chat-{tab.id}.{extension}"
                ),
                "Cache-Control": "no-store",
            },
        )

    # Serve React app
    @app.route('/', defaults={'path': ''})
    @app.route('/<path:path>')
    def serve_react(path):
        if path and Path(app.static_folder, path).exists():
            return send_from_directory(app.static_folder, path)
        return send_from_directory(app.static_folder, 'index.html')

    return app


if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Run the Cursor Chat View server')
    parser.add_argument('--port', type=int, default=5000, help='Port to run the server on')
    parser.add_argument('--debug', action='store_true', help='Run in debug mode')
    parser.add_argument('--log-dir', type=Path, default=Path.cwd() / '.temp' / 'log',
                        help='Directory for the database lifecycle log')
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO,
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    configure_file_log(args.log_dir)

    logger.info(f"Starting server on port {args.port}")
    create_app().run(host='127.0.0.1', port=args.port, debug=args.debug)
