"""Object storage template provisioner.

Templates live under ``s3://<bucket>/<prefix>/<template>/`` on any
S3-compatible store. The bootstrap script installs the AWS CLI inside the
container when missing, syncs the template into the workspace, falls back to
a small scaffold when the download fails, then installs dependencies for the
template's toolchain.
"""

from __future__ import annotations

import shlex

import structlog

from berth.config import ProvisionerConfig
from berth.provisioners.base import TemplateProvisioner, minimal_script

logger = structlog.get_logger()

_INSTALL_TOOLS = """\
if command -v apt-get >/dev/null 2>&1; then
    apt-get update && apt-get install -y curl wget unzip git || echo "tool install failed"
elif command -v apk >/dev/null 2>&1; then
    apk add --no-cache curl wget unzip git aws-cli || echo "tool install failed"
fi"""

_INSTALL_AWS_CLI = """\
if ! command -v aws >/dev/null 2>&1; then
    curl -sS "https://awscli.amazonaws.com/awscli-exe-linux-x86_64.zip" -o /tmp/awscliv2.zip \\
        && unzip -q /tmp/awscliv2.zip -d /tmp \\
        && /tmp/aws/install \\
        || echo "aws cli install failed"
fi"""

_REACT_SCAFFOLD = """\
if [ ! -f package.json ]; then
    echo '{"name":"playground","version":"1.0.0","scripts":{"dev":"echo \\"Please install dependencies first\\""},"dependencies":{}}' > package.json
    mkdir -p src
    echo 'console.log("Hello from React playground!");' > src/index.js
fi"""

# template -> dependency install step
_DEPENDENCY_STEPS = {
    "react-js": 'if [ -f package.json ]; then npm install || echo "npm install failed"; fi',
    "node-js": 'if [ -f package.json ]; then npm install || echo "npm install failed"; fi',
    "next-js": 'if [ -f package.json ]; then npm install || echo "npm install failed"; fi',
    "python": 'if [ -f requirements.txt ]; then pip install -r requirements.txt || echo "pip install failed"; fi',
    "rust": 'if [ -f Cargo.toml ]; then cargo fetch || echo "cargo fetch failed"; fi',
}


class ObjectStorageProvisioner(TemplateProvisioner):
    """Sync templates from an S3-compatible bucket with the AWS CLI."""

    def __init__(self, config: ProvisionerConfig, *, workdir: str = "/workspace") -> None:
        if not config.bucket:
            raise ValueError("ObjectStorageProvisioner requires a bucket")
        self._config = config
        self._workdir = workdir
        self._log = logger.bind(provisioner="object_storage", bucket=config.bucket)

    def _source_uri(self, template_id: str) -> str:
        prefix = self._config.prefix.strip("/")
        parts = [self._config.bucket, prefix, template_id] if prefix else [self._config.bucket, template_id]
        return "s3://" + "/".join(parts) + "/"

    def _credentials(self) -> list[str]:
        lines = [f"export AWS_DEFAULT_REGION={shlex.quote(self._config.region)}"]
        if self._config.access_key_id:
            lines.append(f"export AWS_ACCESS_KEY_ID={shlex.quote(self._config.access_key_id)}")
        if self._config.secret_access_key:
            lines.append(
                f"export AWS_SECRET_ACCESS_KEY={shlex.quote(self._config.secret_access_key)}"
            )
        return lines

    async def bootstrap(self, template_id: str) -> str:
        sync = [
            "aws", "s3", "sync",
            self._source_uri(template_id),
            self._workdir + "/",
        ]
        if self._config.endpoint:
            sync.append(f"--endpoint-url={self._config.endpoint}")

        steps = [
            'echo "Setting up playground environment..."',
            _INSTALL_TOOLS,
            minimal_script(self._workdir),
            _INSTALL_AWS_CLI,
            *self._credentials(),
            f"echo {shlex.quote(f'Downloading template: {template_id}')}",
            f'{shlex.join(sync)} || echo "Template download failed, creating basic structure"',
        ]
        if template_id == "react-js":
            steps.append(_REACT_SCAFFOLD)
        if template_id in _DEPENDENCY_STEPS:
            steps.append(_DEPENDENCY_STEPS[template_id])
        steps.append('echo "Environment setup complete"')

        self._log.debug("provisioner.bootstrap", template=template_id, source=self._source_uri(template_id))
        return "\n".join(steps)
