"""Fix template catalog.

Each :class:`FixKind` maps to exactly one :class:`FixTemplate` listing the
files it writes and a renderer per file. A renderer receives the file's
current content (``None`` when absent) and returns the content to write.
The table is checked for exhaustiveness at import time.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from types import MappingProxyType

from .signatures import FixKind

Renderer = Callable[[str | None], str]

REQUIRED_DEPENDENCIES = {
    "express": "^4.18.2",
    "mongoose": "^7.5.0",
    "cors": "^2.8.5",
    "helmet": "^7.0.0",
    "dotenv": "^16.3.1",
}

ENTRY_POINT = "server.js"
MANIFEST = "package.json"
PLATFORM_CONFIG = "railway.json"
NODE_ENGINE = ">=18.0.0"


@dataclass(frozen=True)
class FixTemplate:
    kind: FixKind
    priority: str
    description: str
    renderers: tuple[tuple[str, Renderer], ...]

    @property
    def files(self) -> tuple[str, ...]:
        return tuple(path for path, _ in self.renderers)


_CONNECT_DEFAULT = """const connectDB = async () => {
  const mongoURI = process.env.DATABASE_URL || process.env.MONGODB_URI;
  if (!mongoURI) {
    console.error('DATABASE_URL is not set');
    return;
  }
  try {
    await mongoose.connect(mongoURI, {
      serverSelectionTimeoutMS: 30000,
      socketTimeoutMS: 45000,
      maxPoolSize: 10,
      retryWrites: true,
    });
    console.log('MongoDB connected');
  } catch (error) {
    console.error('MongoDB connection error:', error.message);
    setTimeout(connectDB, 10000);
  }
};"""

_CONNECT_MODULE = """const connectDB = require('./config/database');"""


def _server_js(connect_block: str) -> str:
    return f"""const express = require('express');
const mongoose = require('mongoose');
const cors = require('cors');
const helmet = require('helmet');
require('dotenv').config();

const app = express();
const PORT = process.env.PORT || 3000;

app.use(helmet());
app.use(cors());
app.use(express.json());
app.use(express.urlencoded({{ extended: true }}));

{connect_block}

app.get('/', (req, res) => {{
  res.json({{ status: 'Running', timestamp: new Date().toISOString() }});
}});

app.get('/health', (req, res) => {{
  res.json({{
    status: 'OK',
    database: mongoose.connection.readyState === 1 ? 'connected' : 'disconnected',
    uptime: process.uptime(),
  }});
}});

app.use((error, req, res, next) => {{
  console.error('Server Error:', error);
  res.status(500).json({{ error: 'Internal Server Error' }});
}});

const start = async () => {{
  await connectDB();
  app.listen(PORT, () => {{
    console.log(`Server running on port ${{PORT}}`);
  }});
}};

start();

module.exports = app;
"""


def render_server(current: str | None) -> str:
    return _server_js(_CONNECT_DEFAULT)


def render_server_with_db_module(current: str | None) -> str:
    return _server_js(_CONNECT_MODULE)


def render_package_json(current: str | None) -> str:
    """Repair an existing manifest in place, or create a fresh one."""
    manifest: dict = {}
    if current:
        try:
            loaded = json.loads(current)
            if isinstance(loaded, dict):
                manifest = loaded
        except json.JSONDecodeError:
            manifest = {}

    manifest.setdefault("name", "web-service")
    manifest.setdefault("version", "1.0.0")
    manifest["main"] = ENTRY_POINT
    scripts = manifest.setdefault("scripts", {})
    scripts["start"] = f"node {ENTRY_POINT}"
    scripts.setdefault("dev", f"nodemon {ENTRY_POINT}")
    manifest.setdefault("engines", {})["node"] = NODE_ENGINE
    dependencies = manifest.setdefault("dependencies", {})
    for name, version in REQUIRED_DEPENDENCIES.items():
        dependencies.setdefault(name, version)
    return json.dumps(manifest, indent=2) + "\n"


def render_railway_json(current: str | None) -> str:
    return json.dumps(
        {
            "build": {"builder": "NIXPACKS"},
            "deploy": {
                "startCommand": "npm start",
                "healthcheckPath": "/health",
                "healthcheckTimeout": 30,
                "restartPolicyType": "ON_FAILURE",
                "restartPolicyMaxRetries": 3,
            },
        },
        indent=2,
    ) + "\n"


def render_nixpacks(current: str | None) -> str:
    return '[phases.setup]\nnixPkgs = ["nodejs_18"]\n\n[start]\ncmd = "npm start"\n'


def render_database_module(current: str | None) -> str:
    return f"""const mongoose = require('mongoose');

{_CONNECT_DEFAULT}

module.exports = connectDB;
"""


def render_env_example(current: str | None) -> str:
    return "PORT=3000\nNODE_ENV=production\nDATABASE_URL=\nMONGODB_URI=\n"


def render_env_module(current: str | None) -> str:
    return """require('dotenv').config();

const required = ['DATABASE_URL'];
const missing = required.filter((name) => !process.env[name] && !process.env.MONGODB_URI);
if (missing.length > 0) {
  console.warn(`Missing environment variables: ${missing.join(', ')}`);
}

module.exports = {
  port: process.env.PORT || 3000,
  nodeEnv: process.env.NODE_ENV || 'development',
  databaseUrl: process.env.DATABASE_URL || process.env.MONGODB_URI,
};
"""


def render_dockerfile(current: str | None) -> str:
    return """FROM node:18-alpine
WORKDIR /app
COPY package*.json ./
RUN npm ci --omit=dev
COPY . .
ENV NODE_ENV=production
EXPOSE 3000
CMD ["npm", "start"]
"""


def render_dockerignore(current: str | None) -> str:
    return "node_modules\nnpm-debug.log\n.env\n.git\n"


def render_workflow(current: str | None) -> str:
    return """name: Deploy

on:
  push:
    branches: [ main, master ]
  pull_request:
    branches: [ main, master ]

jobs:
  build:
    runs-on: ubuntu-latest
    steps:
      - uses: actions/checkout@v4
      - uses: actions/setup-node@v4
        with:
          node-version: '18'
          cache: 'npm'
      - run: npm ci
      - run: npm test --if-present
"""


_CATALOG: dict[FixKind, FixTemplate] = {
    FixKind.MISSING_SERVER_FILE: FixTemplate(
        FixKind.MISSING_SERVER_FILE, "HIGH",
        "Create missing server.js entry point",
        ((ENTRY_POINT, render_server),),
    ),
    FixKind.PACKAGE_JSON_FIX: FixTemplate(
        FixKind.PACKAGE_JSON_FIX, "HIGH",
        "Repair package.json entry point, start script, engines and dependencies",
        ((MANIFEST, render_package_json),),
    ),
    FixKind.RAILWAY_CONFIG: FixTemplate(
        FixKind.RAILWAY_CONFIG, "MEDIUM",
        "Add platform deployment configuration",
        ((PLATFORM_CONFIG, render_railway_json), ("nixpacks.toml", render_nixpacks)),
    ),
    FixKind.DATABASE_CONNECTION: FixTemplate(
        FixKind.DATABASE_CONNECTION, "HIGH",
        "Repair the database connection string handling",
        ((ENTRY_POINT, render_server_with_db_module), ("config/database.js", render_database_module)),
    ),
    FixKind.ENVIRONMENT_VARIABLES: FixTemplate(
        FixKind.ENVIRONMENT_VARIABLES, "MEDIUM",
        "Scaffold environment variable configuration",
        ((".env.example", render_env_example), ("config/env.js", render_env_module)),
    ),
    FixKind.DOCKER_CONFIG: FixTemplate(
        FixKind.DOCKER_CONFIG, "LOW",
        "Add container configuration",
        (("Dockerfile", render_dockerfile), (".dockerignore", render_dockerignore)),
    ),
    FixKind.GITHUB_ACTIONS: FixTemplate(
        FixKind.GITHUB_ACTIONS, "MEDIUM",
        "Add CI pipeline configuration",
        ((".github/workflows/deploy.yml", render_workflow),),
    ),
}

_missing = set(FixKind) - set(_CATALOG)
if _missing:
    raise RuntimeError(f"Fix kinds without a template: {sorted(k.value for k in _missing)}")

CATALOG = MappingProxyType(_CATALOG)


def get_template(kind: FixKind | str) -> FixTemplate:
    """Look up the template for a fix kind.

    Raises:
        UnknownFixKindError: If *kind* is a name outside the catalog.
    """
    return CATALOG[FixKind.parse(kind)]
