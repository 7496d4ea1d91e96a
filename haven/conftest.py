import pytest

from haven.vars import GatewayConfig


@pytest.fixture
def site_dirs(tmp_path):
    """Create a public and a blocked static tree for gateway tests."""
    public = tmp_path / "public"
    public.mkdir()
    (public / "index.html").write_text("<html><body>home</body></html>")
    (public / "app.js").write_text("console.log('app');")
    (public / "docs").mkdir()
    (public / "docs" / "index.html").write_text("<html><body>docs</body></html>")

    blocked = tmp_path / "blocked"
    blocked.mkdir()
    (blocked / "index.html").write_text("<html><body>nothing to see</body></html>")
    (blocked / "style.css").write_text("body { color: grey; }")
    return public, blocked


@pytest.fixture
def gateway_config(site_dirs):
    """Provide an open gateway configuration over the temporary site."""
    public, blocked = site_dirs
    return GatewayConfig(static_dir=str(public), blocked_dir=str(blocked))


@pytest.fixture
def locked_config(site_dirs):
    """Provide a gateway configuration that requires the unlock cookie."""
    public, blocked = site_dirs
    return GatewayConfig(
        static_dir=str(public),
        blocked_dir=str(blocked),
        unlock_key="s3cret-key",
        require_unlock=True,
        service_worker_prefix="/go/",
    )
