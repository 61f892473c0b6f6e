from __future__ import annotations

import time
from string import Template

NGINX_SITE = Template("""\
# Managed by pdev-install ${version}. Re-run the installer with --force to regenerate.
upstream ${process_name}_app {
    server 127.0.0.1:${port};
    keepalive 16;
}

server {
    listen 80;
    listen [::]:80;
    server_name ${domain};
    return 301 https://$$host$$request_uri;
}

server {
    listen 443 ssl http2;
    listen [::]:443 ssl http2;
    server_name ${domain};

    ssl_certificate ${cert_dir}/${domain}/fullchain.pem;
    ssl_certificate_key ${cert_dir}/${domain}/privkey.pem;
    ssl_protocols TLSv1.2 TLSv1.3;

    add_header Strict-Transport-Security "max-age=31536000; includeSubDomains" always;
    add_header X-Frame-Options "SAMEORIGIN" always;
    add_header X-Content-Type-Options "nosniff" always;

    client_max_body_size 10m;

    location ${url_prefix}/ {
        auth_basic "PDev Live";
        auth_basic_user_file ${htpasswd};

        proxy_pass http://${process_name}_app/;
        proxy_http_version 1.1;
        proxy_set_header Upgrade $$http_upgrade;
        proxy_set_header Connection "upgrade";
        proxy_set_header Host $$host;
        proxy_set_header X-Real-IP $$remote_addr;
        proxy_set_header X-Forwarded-For $$proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $$scheme;
        proxy_read_timeout 300s;
    }
}
""")

ECOSYSTEM = Template("""\
// Generated by pdev-install ${version}. Secrets live in .env, never here.
module.exports = {
  apps: [{
    name: '${process_name}',
    script: 'server.js',
    cwd: '${install_dir}',
    exec_mode: 'fork',
    instances: 1,
    autorestart: true,
    max_restarts: 10,
    min_uptime: '60s',
    restart_delay: 4000,
    kill_timeout: 5000,
    listen_timeout: 10000,
    max_memory_restart: '500M',
    node_args: '--max-old-space-size=450',
    error_file: '${install_dir}/logs/error.log',
    out_file: '${install_dir}/logs/out.log',
    env: {
      NODE_ENV: 'production',
      PORT: '${port}'
    }
  }]
};
""")

ENV_FILE = Template("""\
# Generated by pdev-install ${version} on ${generated_at}
NODE_ENV=production
PORT=${port}
PDEV_BASE_URL=${base_url}
PDEV_URL_PREFIX=${url_prefix}
PDEV_SERVE_STATIC=true
PDEV_FRONTEND_DIR=${install_dir}/frontend

PDEV_HTTP_AUTH=true
PDEV_USERNAME=${http_user}
PDEV_PASSWORD=${http_password}

PDEV_DB_HOST=localhost
PDEV_DB_PORT=5432
PDEV_DB_NAME=${db_name}
PDEV_DB_USER=${db_user}
PDEV_DB_PASSWORD=${db_password}

PDEV_ADMIN_KEY=${admin_key}
VALID_SERVERS=${valid_servers}
ALLOWED_IPS=${allowed_ips}

PDEV_INSTALL_DATE=${generated_at}
PDEV_INSTALLER_VERSION=${version}
""")

CLIENT_CONFIG = Template("""\
# PDev Live client configuration
# Generated by pdev-install ${version} on ${generated_at}
PDEV_LIVE_URL=${live_url}
PDEV_BASE_URL=${base_url}
""")


def timestamp() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def render(template: Template, **values: object) -> str:
    return template.substitute({k: "" if v is None else str(v) for k, v in values.items()})
