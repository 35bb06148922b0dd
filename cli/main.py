import typer
import requests
from dotenv import load_dotenv, dotenv_values
import os
import json
import yaml
from typing import Optional

from config_spec import load_settings, render
from controller.errors import ConfigurationError

load_dotenv()

app = typer.Typer(name="poolkeeper", help="Poolkeeper CLI")

# Default values for local development
POOLKEEPER_HOST = os.getenv("POOLKEEPER_HOST", "localhost")
POOLKEEPER_PORT = os.getenv("POOLKEEPER_PORT", "8080")

API_URL = os.getenv("POOLKEEPER_URL", f"http://{POOLKEEPER_HOST}:{POOLKEEPER_PORT}")
ADMIN_URL = f"{API_URL}/_poolkeeper"

def check_service_running():
    """Check if the Poolkeeper controller is running and provide helpful error messages."""
    try:
        response = requests.get(f"{API_URL}/health", timeout=5)
        if response.status_code == 200:
            return True
    except requests.exceptions.ConnectionError:
        typer.echo(f"Poolkeeper controller is not running at {API_URL}.", err=True)
        typer.echo("", err=True)
        typer.echo("To start it:", err=True)
        typer.echo("   POOLKEEPER_CONFIG_TEMPLATE=configs/poolkeeper.conf.template poolkeeper-controller", err=True)
        raise typer.Exit(1)
    except requests.exceptions.Timeout:
        typer.echo("Poolkeeper controller is not responding (timeout).", err=True)
        raise typer.Exit(1)

    typer.echo(f"Poolkeeper controller at {API_URL} is not healthy.", err=True)
    raise typer.Exit(1)

def read_env(env_file: Optional[str]) -> dict:
    """Process environment, overridden by the variables of an optional .env file."""
    env = dict(os.environ)
    if env_file:
        if not os.path.exists(env_file):
            typer.echo(f"Env file '{env_file}' not found", err=True)
            raise typer.Exit(1)
        env.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
    return env

def read_template_file(template: str) -> str:
    if not os.path.exists(template):
        typer.echo(f"Template file '{template}' not found", err=True)
        raise typer.Exit(1)
    with open(template) as f:
        return f.read()

def show_response(response: requests.Response):
    """Print a JSON response, exiting non-zero on an error status."""
    try:
        body = response.json()
    except ValueError:
        body = response.text
    if response.status_code >= 400:
        typer.echo(f"Error ({response.status_code}): {json.dumps(body) if not isinstance(body, str) else body}", err=True)
        raise typer.Exit(1)
    typer.echo(json.dumps(body, indent=2))

@app.command("render")
def render_template(template: str, env_file: Optional[str] = typer.Option(None, help="Extra variables from a .env file"),
                    values: bool = typer.Option(False, help="Print the typed values as YAML instead of the text")):
    """Render a configuration template and report every unresolved variable."""
    try:
        rendered, missing = render(read_template_file(template), read_env(env_file))
    except ConfigurationError as e:
        typer.echo(f"Cannot render: {e}", err=True)
        raise typer.Exit(1)
    if rendered is None:
        typer.echo(f"Unresolved variables ({len(missing)}):", err=True)
        for name in missing:
            typer.echo(f"   {name}", err=True)
        raise typer.Exit(1)

    if values:
        typer.echo(yaml.dump(rendered.values, default_flow_style=False))
    else:
        typer.echo(rendered.text, nl=False)

@app.command()
def validate(template: str, env_file: Optional[str] = typer.Option(None, help="Extra variables from a .env file")):
    """Render and validate a configuration template, then print the effective settings."""
    try:
        settings, _ = load_settings(read_template_file(template), read_env(env_file))
    except ConfigurationError as e:
        typer.echo("Invalid configuration:", err=True)
        for name in e.missing:
            typer.echo(f"   missing variable: {name}", err=True)
        for error in e.errors:
            typer.echo(f"   {error}", err=True)
        raise typer.Exit(1)

    typer.echo(yaml.dump(settings.model_dump(mode="json"), default_flow_style=False, sort_keys=False))

@app.command()
def pools():
    """List all pools and their endpoints."""
    check_service_running()
    show_response(requests.get(f"{ADMIN_URL}/pools", timeout=10))

@app.command()
def status(name: str):
    """Show health, load and autoscaler state of a pool."""
    check_service_running()
    response = requests.get(f"{ADMIN_URL}/pools/{name}", timeout=10)
    if response.status_code == 404:
        typer.echo(f"Pool '{name}' not found", err=True)
        raise typer.Exit(1)
    show_response(response)

@app.command()
def history(name: str, limit: int = 20):
    """Show the scaling audit log of a pool."""
    check_service_running()
    response = requests.get(f"{ADMIN_URL}/pools/{name}/history", params={"limit": limit}, timeout=10)
    if response.status_code != 200:
        show_response(response)
        return
    decisions = response.json().get("decisions", [])
    if not decisions:
        typer.echo(f"No scaling decisions recorded for '{name}'")
        return
    for d in decisions:
        value = "n/a" if d["metric_value"] is None else f"{d['metric_value']:.1f}"
        typer.echo(f"{d['timestamp']:.0f}  {d['action']:<10} {d['current_size']} -> {d['target_size']}  "
                   f"metric={value}  {d['reason']}")

@app.command()
def scale(name: str, replicas: int):
    """Ask the provisioner for a pool size. Out-of-range sizes are clamped to the pool bounds."""
    check_service_running()
    typer.echo(f"Scaling '{name}' to {replicas} replicas (the autoscaler may change it later)")
    try:
        response = requests.post(f"{ADMIN_URL}/pools/{name}/scale", json={"replicas": replicas}, timeout=30)
    except requests.exceptions.RequestException as e:
        typer.echo(f"Error: Unable to connect to API - {e}", err=True)
        raise typer.Exit(1)
    show_response(response)

@app.command()
def reload(env_file: Optional[str] = typer.Option(None, help="Send the variables of a .env file as overrides")):
    """Re-render the controller's configuration template."""
    check_service_running()
    payload = {}
    if env_file:
        if not os.path.exists(env_file):
            typer.echo(f"Env file '{env_file}' not found", err=True)
            raise typer.Exit(1)
        payload["env"] = {k: v for k, v in dotenv_values(env_file).items() if v is not None}
    response = requests.post(f"{ADMIN_URL}/reload", json=payload, timeout=30)
    if response.status_code == 422:
        result = response.json()
        typer.echo("Reload rejected, the current configuration stays in effect:", err=True)
        for name in result.get("missing", []):
            typer.echo(f"   missing variable: {name}", err=True)
        for error in result.get("errors", []):
            typer.echo(f"   {error}", err=True)
        raise typer.Exit(1)
    show_response(response)

@app.command()
def metrics():
    """Print the controller's Prometheus metrics."""
    check_service_running()
    response = requests.get(f"{API_URL}/metrics", timeout=10)
    typer.echo(response.text)

if __name__ == "__main__":
    app()
