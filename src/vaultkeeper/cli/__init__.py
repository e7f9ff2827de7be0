import typer
from typing_extensions import Annotated

from dotenv import load_dotenv, find_dotenv

load_dotenv(find_dotenv())

app = typer.Typer(
    help="vaultkeeper: Kubernetes operator for HashiCorp Vault clusters",
    add_completion=False,
)


@app.command("operator")
def run_operator():
    """Run the Kubernetes operator (connects to cluster)."""
    from vaultkeeper.main import main

    main()


@app.command("generate-crds")
def generate_crds(
    output: Annotated[
        str, typer.Option("-o", "--output", help="Output directory")
    ] = "crds/generated",
    force: Annotated[bool, typer.Option("--force", help="Force regeneration")] = False,
    validate: Annotated[
        bool, typer.Option("--validate", help="Validate generated CRDs")
    ] = False,
):
    """Generate CRD YAML files from pydantic models."""
    from pathlib import Path
    from vaultkeeper.crd.generator import VaultCRDManager

    output_dir = Path(output)
    manager = VaultCRDManager(output_dir=output_dir)

    try:
        success = manager.generate_all_crds(force=force)
    except Exception as e:
        typer.echo(f"Failed to generate CRDs: {e}")
        raise typer.Exit(1)

    if not success:
        typer.echo("No CRDs generated (models unchanged)")
        return

    typer.echo(f"CRDs generated successfully in {output_dir}")
    if validate:
        if manager.validate_generated_crds():
            typer.echo("CRD validation passed")
        else:
            typer.echo("CRD validation failed")
            raise typer.Exit(1)


if __name__ == "__main__":
    app()
