"""Health check endpoint."""

from http.server import BaseHTTPRequestHandler
import json

from src.utils.settings import BellDeskConfig


class handler(BaseHTTPRequestHandler):
    """Health check handler for Vercel serverless function."""

    def do_GET(self):
        """Report service name and reconciliation poll interval."""
        self.send_response(200)
        self.send_header('Content-Type', 'application/json')
        self.end_headers()
        response = json.dumps({
            "status": "ok",
            "service": "belldesk-backend",
            "poll_interval_seconds": BellDeskConfig.RECONCILE_INTERVAL_SECONDS,
        })
        self.wfile.write(response.encode('utf-8'))

    def do_POST(self):
        """Handle POST request (same as GET for health check)."""
        self.do_GET()
