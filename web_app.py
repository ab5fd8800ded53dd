"""Flask web application providing the Kintal dashboard APIs and pages."""

from __future__ import annotations

import argparse
import logging
import os
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from flask import Flask, jsonify, request, redirect, send_from_directory
from flask_cors import CORS

from database import MongoRepository
from analytics import AnalyticsEngine, RequestError
from cost_report import CostReporter, UpstreamError
from error_monitor import ErrorMonitor, MonitorConfigError, DEFAULT_POSTHOG_HOST

AUTH_COOKIE = "kintal-auth"
AUTH_VALUE = "authenticated"
AUTH_MAX_AGE = 60 * 60 * 24
DEFAULT_PASSWORD = "03152628"
UNGATED_PREFIXES = ("/api/", "/static/")

PAGES = {
    "/": "index.html",
    "/lucida/dashboard": "dashboard.html",
    "/lucida/user-list": "user-list.html",
    "/lucida/search-user": "search-user.html",
    "/lucida/integrations": "integrations.html",
    "/lucida/monitor": "monitor.html",
}


def _ok(payload: Dict[str, Any], status: int = 200) -> Any:
    body: Dict[str, Any] = {"success": True}
    body.update(payload)
    return jsonify(body), status


def _request_error(exc: RequestError) -> Any:
    return jsonify({"success": False, "error": exc.message}), exc.status


def _server_error(summary: str, exc: Exception) -> Any:
    return jsonify({"success": False, "error": summary, "message": str(exc)}), 500


def _json_body() -> Dict[str, Any]:
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def create_app(
    repo: MongoRepository,
    monitor: Optional[ErrorMonitor] = None,
    costs: Optional[CostReporter] = None,
    password: str = DEFAULT_PASSWORD,
) -> Flask:
    app = Flask(__name__, static_folder="static")
    CORS(app)
    engine = AnalyticsEngine(repo)
    monitor = monitor or ErrorMonitor(None, None)
    costs = costs or CostReporter(None)

    # ------------------------------------------------------------------
    # Edge gate
    # ------------------------------------------------------------------
    @app.before_request
    def require_login() -> Any:
        path = request.path
        if path.startswith(UNGATED_PREFIXES) or path == "/favicon.ico":
            return None
        authenticated = request.cookies.get(AUTH_COOKIE) == AUTH_VALUE
        on_auth_page = path.startswith("/auth")
        if not authenticated and not on_auth_page:
            return redirect("/auth")
        if authenticated and on_auth_page:
            return redirect("/")
        return None

    @app.route("/auth", methods=["GET"])
    def auth_page() -> Any:
        return send_from_directory(app.static_folder, "auth.html")

    @app.route("/auth", methods=["POST"])
    def login() -> Any:
        if request.form.get("password", "") != password:
            logging.info("rejected dashboard login from %s", request.remote_addr)
            return redirect("/auth?error=1")
        response = redirect("/")
        response.set_cookie(AUTH_COOKIE, AUTH_VALUE, max_age=AUTH_MAX_AGE, path="/")
        return response

    @app.route("/logout")
    def logout() -> Any:
        response = redirect("/auth")
        response.delete_cookie(AUTH_COOKIE, path="/")
        return response

    for path, filename in PAGES.items():
        app.add_url_rule(
            path,
            endpoint=f"page_{filename.split('.')[0].replace('-', '_')}",
            view_func=lambda filename=filename: send_from_directory(app.static_folder, filename),
        )

    @app.route("/api/health")
    def health() -> Any:
        try:
            repo.ping()
            return jsonify({"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()})
        except Exception as exc:
            return jsonify({"status": "unhealthy", "error": str(exc)}), 503

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------
    @app.route("/api/lucida/users")
    def users_summary() -> Any:
        try:
            return _ok(engine.users_summary(request.args.get("from"), request.args.get("to")))
        except RequestError as exc:
            return _request_error(exc)
        except Exception as exc:
            logging.exception("fetch users failed")
            return _server_error("Failed to fetch users", exc)

    @app.route("/api/lucida/users/list")
    def user_list() -> Any:
        try:
            return _ok(engine.user_list(
                request.args.get("page"),
                request.args.get("limit"),
                request.args.get("from"),
                request.args.get("to"),
                id_filter=(request.args.get("id") or "").strip() or None,
                subscription_type=(request.args.get("subscriptionType") or "").strip() or None,
                institutions_only=request.args.get("institutionsOnly") == "true",
            ))
        except RequestError as exc:
            return _request_error(exc)
        except Exception as exc:
            logging.exception("user list failed")
            return _server_error("Failed to fetch user list", exc)

    @app.route("/api/lucida/users/search")
    def user_search() -> Any:
        try:
            return _ok(engine.search_user(request.args.get("q")))
        except RequestError as exc:
            return _request_error(exc)
        except Exception as exc:
            logging.exception("user search failed")
            return _server_error("Failed to search user", exc)

    @app.route("/api/lucida/users/<user_id>/plan", methods=["PATCH"])
    def update_plan(user_id: str) -> Any:
        try:
            return _ok({"data": engine.update_plan(user_id, _json_body().get("plan"))})
        except RequestError as exc:
            return _request_error(exc)
        except Exception as exc:
            logging.exception("update user plan failed")
            return _server_error("Failed to update user plan", exc)

    @app.route("/api/lucida/users/<user_id>/usage", methods=["PATCH"])
    def update_usage(user_id: str) -> Any:
        try:
            return _ok({"data": engine.update_usage(user_id, _json_body().get("examsThisPeriod"))})
        except RequestError as exc:
            return _request_error(exc)
        except Exception as exc:
            logging.exception("update user usage failed")
            return _server_error("Failed to update user usage", exc)

    @app.route("/api/lucida/users/<user_id>/integration", methods=["PATCH"])
    def link_integration(user_id: str) -> Any:
        try:
            return _ok({"data": engine.link_integration(user_id, _json_body().get("integrationId"))})
        except RequestError as exc:
            return _request_error(exc)
        except Exception as exc:
            logging.exception("update user integration failed")
            return _server_error("Failed to update user integration", exc)

    @app.route("/api/lucida/users/<user_id>/integration", methods=["DELETE"])
    def unlink_integration(user_id: str) -> Any:
        try:
            return _ok({"data": engine.unlink_integration(user_id)})
        except RequestError as exc:
            return _request_error(exc)
        except Exception as exc:
            logging.exception("remove user integration failed")
            return _server_error("Failed to remove user integration", exc)

    @app.route("/api/lucida/users/<user_id>/integrat-partner-token", methods=["PATCH"])
    def update_partner_token(user_id: str) -> Any:
        try:
            return _ok({"data": engine.update_partner_token(user_id, _json_body().get("integratPartnerToken"))})
        except RequestError as exc:
            return _request_error(exc)
        except Exception as exc:
            logging.exception("update integrat partner token failed")
            return _server_error("Failed to update integrat partner token", exc)

    # ------------------------------------------------------------------
    # Exams, questions, answers, results
    # ------------------------------------------------------------------
    @app.route("/api/lucida/exams")
    def exams_summary() -> Any:
        try:
            return _ok(engine.exams_summary(request.args.get("from"), request.args.get("to")))
        except RequestError as exc:
            return _request_error(exc)
        except Exception as exc:
            logging.exception("fetch exams failed")
            return _server_error("Failed to fetch exams", exc)

    @app.route("/api/lucida/questions")
    def questions_summary() -> Any:
        try:
            return _ok(engine.questions_summary(request.args.get("from"), request.args.get("to")))
        except RequestError as exc:
            return _request_error(exc)
        except Exception as exc:
            logging.exception("questions sum failed")
            return _server_error("Failed to calculate questions sum", exc)

    @app.route("/api/lucida/answers")
    def answers() -> Any:
        try:
            return _ok(engine.answers(request.args.get("from"), request.args.get("to")))
        except RequestError as exc:
            return _request_error(exc)
        except Exception as exc:
            logging.exception("fetch answers failed")
            return _server_error("Failed to fetch answers", exc)

    @app.route("/api/lucida/results")
    def results() -> Any:
        try:
            return _ok(engine.results(
                request.args.get("from"),
                request.args.get("to"),
                exam_id=request.args.get("examId"),
                email=request.args.get("email"),
            ))
        except RequestError as exc:
            return _request_error(exc)
        except Exception as exc:
            logging.exception("fetch results failed")
            return _server_error("Failed to fetch results", exc)

    @app.route("/api/lucida/results/<result_id>", methods=["DELETE"])
    def delete_result(result_id: str) -> Any:
        try:
            return _ok(engine.delete_result(result_id))
        except RequestError as exc:
            return _request_error(exc)
        except Exception as exc:
            logging.exception("delete result failed")
            return _server_error("Failed to delete result", exc)

    @app.route("/api/lucida/chart-data")
    def chart_data() -> Any:
        try:
            return _ok(engine.chart_data(request.args.get("from"), request.args.get("to")))
        except RequestError as exc:
            return _request_error(exc)
        except Exception as exc:
            logging.exception("chart data failed")
            return _server_error("Failed to fetch chart data", exc)

    # ------------------------------------------------------------------
    # Integrations
    # ------------------------------------------------------------------
    @app.route("/api/lucida/integrations", methods=["GET"])
    def list_integrations() -> Any:
        try:
            return _ok(engine.list_integrations())
        except Exception as exc:
            logging.exception("fetch integrations failed")
            return _server_error("Failed to fetch integrations", exc)

    @app.route("/api/lucida/integrations", methods=["POST"])
    def create_integration() -> Any:
        try:
            return _ok(engine.create_integration(_json_body().get("integrationName")), 201)
        except RequestError as exc:
            return _request_error(exc)
        except Exception as exc:
            logging.exception("create integration failed")
            return _server_error("Failed to create integration", exc)

    @app.route("/api/lucida/integrations", methods=["DELETE"])
    def delete_integration() -> Any:
        try:
            return _ok(engine.delete_integration(request.args.get("id")))
        except RequestError as exc:
            return _request_error(exc)
        except Exception as exc:
            logging.exception("delete integration failed")
            return _server_error("Failed to delete integration", exc)

    # ------------------------------------------------------------------
    # OpenAI costs
    # ------------------------------------------------------------------
    @app.route("/api/openai/costs")
    def openai_costs() -> Any:
        start_time = request.args.get("start_time")
        end_time = request.args.get("end_time")
        if not start_time or not end_time:
            return jsonify({"success": False, "error": "start_time and end_time parameters are required"}), 400
        if not costs.configured:
            return jsonify({"success": False, "error": "OpenAI API key not configured"}), 500
        try:
            return jsonify(costs.costs(start_time, end_time))
        except UpstreamError as exc:
            return jsonify({"success": False, "error": exc.message}), exc.status
        except Exception:
            logging.exception("openai costs failed")
            return jsonify({"success": False, "error": "Internal server error"}), 500

    # ------------------------------------------------------------------
    # PostHog errors
    # ------------------------------------------------------------------
    @app.route("/api/posthog/errors")
    def posthog_errors() -> Any:
        try:
            return _ok(monitor.errors(request.args.get("from"), request.args.get("to"), request.args.get("limit")))
        except MonitorConfigError as exc:
            return jsonify({"success": False, "error": str(exc)}), 500
        except Exception as exc:
            logging.exception("posthog errors failed")
            return _server_error("Failed to fetch errors from PostHog", exc)

    @app.route("/api/posthog/errors/stats")
    def posthog_error_stats() -> Any:
        try:
            return _ok({"data": monitor.stats(request.args.get("from"), request.args.get("to"))})
        except MonitorConfigError as exc:
            return jsonify({"success": False, "error": str(exc)}), 500
        except Exception as exc:
            logging.exception("posthog error stats failed")
            return _server_error("Failed to fetch error statistics from PostHog", exc)

    @app.route("/api/posthog/errors/chart-data")
    def posthog_chart_data() -> Any:
        try:
            return _ok(monitor.chart_data(
                request.args.get("from"),
                request.args.get("to"),
                request.args.get("groupBy"),
            ))
        except MonitorConfigError as exc:
            return jsonify({"success": False, "error": str(exc)}), 500
        except Exception as exc:
            logging.exception("posthog chart data failed")
            return _server_error("Failed to fetch chart data from PostHog", exc)

    @app.route("/api/posthog/errors/types")
    def posthog_error_types() -> Any:
        try:
            return _ok(monitor.error_types(request.args.get("from"), request.args.get("to"), request.args.get("limit")))
        except MonitorConfigError as exc:
            return jsonify({"success": False, "error": str(exc)}), 500
        except Exception as exc:
            logging.exception("posthog error types failed")
            return _server_error("Failed to fetch error types from PostHog", exc)

    return app


def main() -> None:
    parser = argparse.ArgumentParser(description="Kintal dashboard server")
    parser.add_argument("--connection-string", default=os.environ.get("MONGODB_URI", "mongodb://localhost:27017/"))
    parser.add_argument("--database", default=os.environ.get("MONGODB_DATABASE", "lucida"))
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=5000)
    parser.add_argument("--debug", action="store_true")
    parser.add_argument("--password", default=os.environ.get("KINTAL_PASSWORD", DEFAULT_PASSWORD))
    parser.add_argument("--openai-api-key", default=os.environ.get("OPENAI_API_KEY"))
    parser.add_argument("--posthog-api-key", default=os.environ.get("POSTHOG_API_KEY"))
    parser.add_argument("--posthog-project-id", default=os.environ.get("POSTHOG_PROJECT_ID"))
    parser.add_argument("--posthog-host", default=os.environ.get("POSTHOG_HOST", DEFAULT_POSTHOG_HOST))
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    repo = MongoRepository(args.connection_string, args.database)
    repo.ensure_indexes()
    app = create_app(
        repo,
        monitor=ErrorMonitor(args.posthog_api_key, args.posthog_project_id, args.posthog_host),
        costs=CostReporter(args.openai_api_key),
        password=args.password,
    )
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
