import socketserver
import threading
import time

import pytest
from flask import Flask, Response, jsonify, redirect, request
from werkzeug.serving import make_server

from authproxy.model.config import ProxyConfig
from authproxy.model.ProxyServer import ProxyServer
from tests.helpers import PASSWORD, USERNAME, proxy_url


def create_origin_app() -> Flask:
    app = Flask(__name__)

    @app.route("/redirect")
    def moved():
        return redirect("/echo/landed", code=302)

    @app.route("/status/<int:code>")
    def status(code):
        return Response(f"status {code}\n", status=code, mimetype="text/plain")

    @app.route("/cookies")
    def cookies():
        resp = Response("cookies\n", mimetype="text/plain")
        resp.set_cookie("first", "1")
        resp.set_cookie("second", "2")
        return resp

    @app.route("/stream")
    def stream():
        def generate():
            for part in (b"alpha-", b"beta-", b"gamma"):
                yield part
        return Response(generate(), mimetype="application/octet-stream")

    @app.route("/", defaults={"path": ""}, methods=["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH"])
    @app.route("/<path:path>", methods=["GET", "HEAD", "POST", "PUT", "DELETE", "PATCH"])
    def catch_all(path):
        return jsonify({
            "method": request.method,
            "path": request.full_path if request.query_string else request.path,
            "host": request.host,
            "headers": [[k, v] for k, v in request.headers.items()],
            "body": request.get_data().decode("utf-8"),
        })

    return app


class EchoHandler(socketserver.BaseRequestHandler):
    def handle(self):
        while True:
            data = self.request.recv(65536)
            if not data:
                return
            self.request.sendall(data)


class EchoServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True


class ScriptedHandler(socketserver.BaseRequestHandler):
    """Reads one request head, then plays back ``server.script`` as (delay, bytes) steps."""

    def handle(self):
        data = b""
        while b"\r\n\r\n" not in data:
            chunk = self.request.recv(4096)
            if not chunk:
                return
            data += chunk
        try:
            for delay, part in self.server.script:
                time.sleep(delay)
                self.request.sendall(part)
        except OSError:
            pass


@pytest.fixture(scope="session")
def origin():
    server = make_server("127.0.0.1", 0, create_origin_app(), threaded=True)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield f"http://127.0.0.1:{server.server_port}"
    server.shutdown()


@pytest.fixture
def echo_server():
    server = EchoServer(("127.0.0.1", 0), EchoHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server.server_address
    server.shutdown()
    server.server_close()


@pytest.fixture
def start_proxy():
    servers = []

    def start(timeout_seconds=5, dispatcher=None):
        config = ProxyConfig(port="127.0.0.1:0", username=USERNAME, password=PASSWORD,
                             timeout_seconds=timeout_seconds)
        server = ProxyServer(config, dispatcher=dispatcher)
        threading.Thread(target=server.start, daemon=True).start()
        servers.append(server)
        return server

    yield start
    for server in servers:
        server.stop()


@pytest.fixture
def proxy(start_proxy):
    return start_proxy()


@pytest.fixture
def proxies(proxy):
    url = proxy_url(proxy)
    return {"http": url, "https": url}


@pytest.fixture
def scripted_origin():
    servers = []

    def start(script):
        server = EchoServer(("127.0.0.1", 0), ScriptedHandler)
        server.script = script
        threading.Thread(target=server.serve_forever, daemon=True).start()
        servers.append(server)
        return f"http://127.0.0.1:{server.server_address[1]}"

    yield start
    for server in servers:
        server.shutdown()
        server.server_close()
