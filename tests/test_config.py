from config import Config


def write_feeds(tmp_path, text):
    feeds_file = tmp_path / "feeds.yaml"
    feeds_file.write_text(text)
    return str(feeds_file)


def test_feeds_yaml_supplies_relay_and_sources(monkeypatch, tmp_path):
    monkeypatch.delenv("FEED_PROXY_BASE", raising=False)
    monkeypatch.setenv("FEEDS_CONFIG_PATH", write_feeds(tmp_path, """
proxy:
  url: " http://relay.local "
feeds:
  blog:
    url: https://example.com/feed
    folder: Blogs
  broken: 42
"""))

    cfg = Config()

    assert cfg.FEED_PROXY_BASE == "http://relay.local"
    assert cfg.FEED_SOURCES == {'blog': {'url': 'https://example.com/feed', 'folder': 'Blogs'}}


def test_environment_relay_wins_over_file(monkeypatch, tmp_path):
    monkeypatch.setenv("FEED_PROXY_BASE", "http://env-relay")
    monkeypatch.setenv("FEEDS_CONFIG_PATH", write_feeds(tmp_path, "proxy:\n  url: http://file-relay\n"))

    assert Config().FEED_PROXY_BASE == "http://env-relay"


def test_missing_feeds_file_means_no_sources(monkeypatch, tmp_path):
    monkeypatch.delenv("FEED_PROXY_BASE", raising=False)
    monkeypatch.setenv("FEEDS_CONFIG_PATH", str(tmp_path / "absent.yaml"))

    cfg = Config()

    assert cfg.FEED_SOURCES == {}
    assert cfg.FEED_PROXY_BASE is None


def test_invalid_numbers_fall_back_to_defaults(monkeypatch, tmp_path):
    monkeypatch.setenv("FEEDS_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("FLEET_CONCURRENCY", "lots")
    monkeypatch.setenv("UNREAD_LIMIT", "-5")
    monkeypatch.setenv("MAX_FETCH_RETRIES", "0")
    monkeypatch.setenv("FETCH_TIMEOUT", "2.5")

    cfg = Config()

    assert cfg.FLEET_CONCURRENCY == 3
    assert cfg.UNREAD_LIMIT == 50
    assert cfg.MAX_FETCH_RETRIES == 0
    assert cfg.FETCH_TIMEOUT == 2.5


def test_secrets_file_exports_environment(monkeypatch, tmp_path):
    secrets = tmp_path / "secrets.yaml"
    secrets.write_text("environment:\n  SNIPPET_LENGTH: 80\n")
    monkeypatch.setenv("SECRETS_FILE", str(secrets))
    monkeypatch.setenv("FEEDS_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    # Registered so teardown removes the value the secrets file exports
    monkeypatch.setenv("SNIPPET_LENGTH", "150")

    cfg = Config()

    assert cfg.SNIPPET_LENGTH == 80
