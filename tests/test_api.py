import io
import json
import math
import zipfile
from pathlib import Path
from unittest.mock import Mock, patch

import pytest
from fastapi.testclient import TestClient

from domain.installer import PipInstaller
import interfaces.api as api
from interfaces.api import app, initialize_app, Config


def fake_run(returncode=0, stderr=b"", files=()):
    """subprocess.run stand-in that writes stderr and creates files under the workspace."""
    def run(cmd, **kwargs):
        kwargs["stderr"].write(stderr)
        for relative_path in files:
            target = Path(kwargs["cwd"]) / relative_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(f"contents of {relative_path}")
        return Mock(returncode=returncode)
    return run


class SingleDirInstaller(PipInstaller):
    """pip installer whose output subtree is called 'a'."""

    @property
    def output_folder_name(self) -> str:
        return "a"


class TestAPI:
    """Test cases for API endpoints."""

    @pytest.fixture
    def workspace_root(self, tmp_path):
        root = tmp_path / "workspaces"
        root.mkdir()
        return root

    @pytest.fixture
    def test_app(self, workspace_root):
        """Create a test FastAPI app instance."""
        return initialize_app(manager="pip", workspace_root=str(workspace_root))

    @pytest.fixture
    def client(self, test_app):
        """Create a test client with lifespan events."""
        with TestClient(test_app) as client:
            yield client

    def test_health_check(self, client):
        """Test health check endpoint."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "manager": "pip"}

    @patch('subprocess.run')
    def test_json_request_single_file_scenario(self, mock_run, workspace_root):
        """JSON body with one installed file a/b.txt yields exactly a/ and a/b.txt."""
        mock_run.side_effect = fake_run(files=["a/b.txt"])
        test_app = initialize_app(workspace_root=str(workspace_root), custom_installer=SingleDirInstaller())

        with TestClient(test_app) as client:
            response = client.post("/install", json={"requirements.txt": "requests==2.31.0\n"})

        assert response.status_code == 200
        assert response.headers['content-type'] == 'application/zip'
        archive = zipfile.ZipFile(io.BytesIO(response.content))
        assert archive.namelist() == ["a/", "a/b.txt"]
        assert list(workspace_root.iterdir()) == []

    @patch('subprocess.run')
    def test_json_request_success(self, mock_run, client, workspace_root):
        mock_run.side_effect = fake_run(files=[
            "site-packages/requests/__init__.py",
            "site-packages/requests-2.31.0.dist-info/METADATA",
        ])

        response = client.post("/install", json={
            "requirements.txt": "requests==2.31.0\n",
            "unrelated": "ignored"
        })

        assert response.status_code == 200
        assert response.headers['content-disposition'] == 'attachment; filename="python_packages.zip"'
        archive = zipfile.ZipFile(io.BytesIO(response.content))
        assert set(archive.namelist()) == {
            "site-packages/",
            "site-packages/requests/",
            "site-packages/requests/__init__.py",
            "site-packages/requests-2.31.0.dist-info/",
            "site-packages/requests-2.31.0.dist-info/METADATA",
        }
        assert archive.read("site-packages/requests/__init__.py") == \
            b"contents of site-packages/requests/__init__.py"
        assert "-c" not in mock_run.call_args[0][0]
        assert list(workspace_root.iterdir()) == []

    @patch('subprocess.run')
    def test_multipart_request_with_constraints(self, mock_run, client, workspace_root):
        mock_run.side_effect = fake_run(files=["site-packages/idna/__init__.py"])

        files = {
            'requirements.txt': ('requirements.txt', io.BytesIO(b'idna\n'), 'text/plain'),
            'constraints.txt': ('constraints.txt', io.BytesIO(b'idna==3.6\n'), 'text/plain'),
        }
        response = client.post("/install", files=files)

        assert response.status_code == 200
        args = mock_run.call_args[0][0]
        assert args[-2:] == ["-c", "constraints.txt"]
        archive = zipfile.ZipFile(io.BytesIO(response.content))
        assert "site-packages/idna/__init__.py" in archive.namelist()
        assert list(workspace_root.iterdir()) == []

    @patch('subprocess.run')
    def test_multipart_text_field(self, mock_run, client):
        mock_run.side_effect = fake_run(files=["site-packages/six.py"])

        response = client.post(
            "/install",
            data={'requirements.txt': 'six\n'},
            files={'constraints.txt': ('constraints.txt', io.BytesIO(b''), 'text/plain')}
        )

        assert response.status_code == 200
        assert "-c" not in mock_run.call_args[0][0]

    @patch('subprocess.run')
    def test_multipart_missing_primary(self, mock_run, client, workspace_root):
        files = {'constraints.txt': ('constraints.txt', io.BytesIO(b'idna==3.6\n'), 'text/plain')}

        response = client.post("/install", files=files)

        assert response.status_code == 400
        assert response.headers['content-type'].startswith('text/plain')
        assert response.text == "Missing requirements.txt in request"
        mock_run.assert_not_called()
        assert list(workspace_root.iterdir()) == []

    @patch('subprocess.run')
    def test_multipart_empty_primary(self, mock_run, client, workspace_root):
        files = {'requirements.txt': ('requirements.txt', io.BytesIO(b''), 'text/plain')}

        response = client.post("/install", files=files)

        assert response.status_code == 400
        mock_run.assert_not_called()
        assert list(workspace_root.iterdir()) == []

    @pytest.mark.parametrize("body", [
        {},
        {"requirements.txt": ""},
        {"constraints.txt": "idna==3.6\n"},
    ])
    @patch('subprocess.run')
    def test_json_missing_or_empty_primary(self, mock_run, body, client, workspace_root):
        response = client.post("/install", json=body)

        assert response.status_code == 400
        assert "Missing requirements.txt" in response.text
        mock_run.assert_not_called()
        assert list(workspace_root.iterdir()) == []

    @pytest.mark.parametrize("content, message", [
        (b'{"requirements.txt": ', "Error decoding request body"),
        (b'["requests"]', "must be a JSON object"),
        (b'{"requirements.txt": 42}', "must be a string"),
        (b'\xff\xfe', "not valid UTF-8"),
    ])
    def test_json_malformed(self, content, message, client):
        response = client.post("/install", content=content, headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert message in response.text

    def test_oversized_body_rejected(self, workspace_root):
        test_app = initialize_app(workspace_root=str(workspace_root), max_body_size=64)

        with TestClient(test_app) as client:
            json_response = client.post("/install", json={"requirements.txt": "x" * 100})
            files = {'requirements.txt': ('requirements.txt', io.BytesIO(b'x' * 100), 'text/plain')}
            multipart_response = client.post("/install", files=files)

        assert json_response.status_code == 400
        assert "exceeds 64 bytes" in json_response.text
        assert multipart_response.status_code == 400
        assert list(workspace_root.iterdir()) == []

    @patch('subprocess.run')
    def test_chunked_multipart_stops_at_ceiling(self, mock_run, workspace_root):
        """A multipart upload without Content-Length is cut off once it passes the ceiling."""
        test_app = initialize_app(workspace_root=str(workspace_root), max_body_size=1000)
        head = (
            b'--boundary\r\n'
            b'Content-Disposition: form-data; name="requirements.txt"; filename="requirements.txt"\r\n'
            b'Content-Type: text/plain\r\n\r\n'
        )

        def body():
            yield head
            for _ in range(256):
                yield b"x" * 1024
            yield b'\r\n--boundary--\r\n'

        with TestClient(test_app) as client:
            response = client.post(
                "/install",
                content=body(),
                headers={"Content-Type": "multipart/form-data; boundary=boundary"}
            )

        assert response.status_code == 400
        assert response.text == "Request body exceeds 1000 bytes"
        mock_run.assert_not_called()
        assert list(workspace_root.iterdir()) == []

    def test_deeply_nested_json_rejected(self, client, workspace_root):
        content = b"[" * 200000 + b"]" * 200000

        response = client.post("/install", content=content, headers={"Content-Type": "application/json"})

        assert response.status_code == 400
        assert "Error decoding request body" in response.text
        assert list(workspace_root.iterdir()) == []

    @patch('subprocess.run')
    def test_install_holds_a_limiter_token(self, mock_run, workspace_root):
        borrowed = []
        run = fake_run(files=["site-packages/six.py"])

        def counting_run(cmd, **kwargs):
            borrowed.append(api.install_limiter.borrowed_tokens)
            return run(cmd, **kwargs)

        mock_run.side_effect = counting_run
        test_app = initialize_app(workspace_root=str(workspace_root), max_concurrent_installs=2)

        with TestClient(test_app) as client:
            response = client.post("/install", json={"requirements.txt": "six\n"})
            assert api.install_limiter.total_tokens == 2
            assert api.install_limiter.borrowed_tokens == 0

        assert response.status_code == 200
        assert borrowed == [1]

    def test_no_install_limit(self, workspace_root):
        test_app = initialize_app(workspace_root=str(workspace_root), max_concurrent_installs=None)

        with TestClient(test_app):
            assert api.install_limiter.total_tokens == math.inf

    @patch('subprocess.run')
    def test_installer_failure_returns_stderr(self, mock_run, client, workspace_root):
        mock_run.side_effect = fake_run(returncode=1, stderr=b"conflict")

        response = client.post("/install", json={"requirements.txt": "a==1\nb==2\n"})

        assert response.status_code == 500
        assert response.headers['content-type'].startswith('text/plain')
        assert "conflict" in response.text
        assert list(workspace_root.iterdir()) == []

    @patch('subprocess.run')
    def test_installer_without_output(self, mock_run, client, workspace_root):
        mock_run.side_effect = fake_run(returncode=0)

        response = client.post("/install", json={"requirements.txt": "requests\n"})

        assert response.status_code == 500
        assert "did not produce site-packages" in response.text
        assert list(workspace_root.iterdir()) == []

    def test_workspace_allocation_failure(self, tmp_path):
        test_app = initialize_app(workspace_root=str(tmp_path / "missing"))

        with TestClient(test_app) as client:
            response = client.post("/install", json={"requirements.txt": "requests\n"})

        assert response.status_code == 500
        assert "Failed to create workspace" in response.text

    def test_get_not_allowed(self, client):
        response = client.get("/install")

        assert response.status_code == 405
        assert response.headers['content-type'].startswith('text/plain')

    @patch('subprocess.run')
    def test_npm_backend_and_archive_name(self, mock_run, workspace_root):
        mock_run.side_effect = fake_run(files=["node_modules/left-pad/index.js"])
        test_app = initialize_app(
            manager="npm",
            workspace_root=str(workspace_root),
            archive_name="npm_build.zip"
        )

        with TestClient(test_app) as client:
            response = client.post("/install", json={
                "package.json": json.dumps({"dependencies": {"left-pad": "1.3.0"}}),
                "package-lock.json": json.dumps({"lockfileVersion": 3})
            })

        assert response.status_code == 200
        assert response.headers['content-disposition'] == 'attachment; filename="npm_build.zip"'
        assert mock_run.call_args[0][0][:2] == ["npm", "ci"]
        archive = zipfile.ZipFile(io.BytesIO(response.content))
        assert "node_modules/left-pad/index.js" in archive.namelist()

    @patch('interfaces.api.installer', None)
    def test_server_not_configured_error(self, client):
        response = client.post("/install", json={"requirements.txt": "requests\n"})

        assert response.status_code == 500
        assert response.text == "Server not properly configured"

    def test_config_initialization(self):
        config = Config(manager="npm", max_body_size=1024, installer_args=["--prefer-offline"])

        assert config.manager == "npm"
        assert config.max_body_size == 1024
        assert config.install_timeout == 600
        assert config.workspace_root is None
        assert config.archive_name is None
        assert config.installer_args == ["--prefer-offline"]

    def test_unknown_manager(self):
        with pytest.raises(ValueError):
            initialize_app(manager="composer")
