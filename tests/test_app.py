"""Unit tests for the HTTP metrics endpoint"""
import gzip

import pytest

from dbquery_exporter import Exporter, ExporterConfig, create_app


@pytest.fixture
def exporter():
    exporter = Exporter(ExporterConfig(timezone="UTC"))
    yield exporter
    exporter.shutdown()


@pytest.fixture
def client(exporter):
    app = create_app(exporter=exporter)
    app.config['TESTING'] = True
    return app.test_client()


def test_metrics_exposition(client, exporter):
    exporter.metrics.up.labels(database="app").set(1)
    exporter.metrics.query_value.labels(database="app", name="orders", col="total").set(12)

    resp = client.get('/metrics')

    assert resp.status_code == 200
    assert resp.headers['Content-Type'].startswith('text/plain')
    body = resp.get_data(as_text=True)
    assert 'postgresdb_exporter_up{database="app"} 1.0' in body
    assert 'postgresdb_exporter_query_value{database="app",name="orders",col="total"} 12.0' in body
    assert '# TYPE postgresdb_exporter_query_error gauge' in body


def test_last_write_wins(client, exporter):
    gauge = exporter.metrics.query_value.labels(database="app", name="orders", col="total")
    gauge.set(1)
    gauge.set(2)

    body = client.get('/metrics').get_data(as_text=True)

    assert 'postgresdb_exporter_query_value{database="app",name="orders",col="total"} 2.0' in body
    assert 'col="total"} 1.0' not in body


def test_gzip(client, exporter):
    exporter.metrics.up.labels(database="app").set(0)

    resp = client.get('/metrics', headers={'Accept-Encoding': 'gzip, deflate'})

    assert resp.headers['Content-Encoding'] == 'gzip'
    body = gzip.decompress(resp.get_data()).decode('utf-8')
    assert 'postgresdb_exporter_up{database="app"} 0.0' in body
    assert resp.headers['Content-Length'] == str(len(resp.get_data()))


def test_uncompressed_by_default(client):
    resp = client.get('/metrics')
    assert 'Content-Encoding' not in resp.headers


def test_landing_page(client):
    resp = client.get('/')
    assert resp.status_code == 200
    assert resp.headers['Content-Type'].startswith('text/html')
    assert b'href="/metrics"' in resp.get_data()


def test_exporter_attached(exporter):
    app = create_app(exporter=exporter)
    assert app.extensions['dbquery_exporter'] is exporter


def test_create_app_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "exporter.yaml"
    config_path.write_text("timezone: UTC\n")
    monkeypatch.setenv("DBQUERY_EXPORTER_CONFIG", str(config_path))

    app = create_app()
    try:
        exporter = app.extensions['dbquery_exporter']
        assert exporter.config.timezone == "UTC"
        assert exporter.scheduler.running
    finally:
        app.extensions['dbquery_exporter'].shutdown()
