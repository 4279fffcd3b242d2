from tortoise import BaseDBAsyncClient


async def upgrade(db: BaseDBAsyncClient) -> str:
    return """
        CREATE TABLE IF NOT EXISTS "deployments" (
    "id" VARCHAR(36) NOT NULL  PRIMARY KEY,
    "site_name" VARCHAR(255) NOT NULL,
    "subdomain" VARCHAR(255) NOT NULL UNIQUE,
    "status" VARCHAR(32) NOT NULL,
    "port" INT,
    "pid" INT,
    "build_log" TEXT,
    "error_log" TEXT,
    "file_path" VARCHAR(1024),
    "screenshot_path" VARCHAR(1024),
    "is_demo" INT NOT NULL  DEFAULT 0,
    "expires_at" TIMESTAMP,
    "created_at" TIMESTAMP NOT NULL  DEFAULT CURRENT_TIMESTAMP,
    "updated_at" TIMESTAMP NOT NULL  DEFAULT CURRENT_TIMESTAMP
);
CREATE INDEX IF NOT EXISTS "idx_deployments_status_ac9ad1" ON "deployments" ("status");
CREATE INDEX IF NOT EXISTS "idx_deployments_is_demo_a3b7f0" ON "deployments" ("is_demo");
CREATE INDEX IF NOT EXISTS "idx_deployments_expires_4c1e2d" ON "deployments" ("expires_at");
CREATE INDEX IF NOT EXISTS "idx_deployments_subdoma_5f0e91" ON "deployments" ("subdomain");
CREATE TABLE IF NOT EXISTS "aerich" (
    "id" INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL,
    "version" VARCHAR(255) NOT NULL,
    "app" VARCHAR(100) NOT NULL,
    "content" JSON NOT NULL
);"""


async def downgrade(db: BaseDBAsyncClient) -> str:
    return """
        DROP TABLE IF EXISTS "deployments";"""
