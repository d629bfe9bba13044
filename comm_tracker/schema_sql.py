SCHEMA_SQL = '''
CREATE TABLE IF NOT EXISTS projects (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    description TEXT,
    location TEXT,
    status TEXT NOT NULL DEFAULT 'inprogress' CHECK (status IN ('complete','inprogress','delayed')),
    progress INTEGER NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
    start_date TEXT,
    end_date TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS systems (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    project_id INTEGER NOT NULL,
    completion_rate INTEGER NOT NULL DEFAULT 0 CHECK (completion_rate BETWEEN 0 AND 100),
    start_date TEXT,
    end_date TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS subsystems (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    system_id INTEGER NOT NULL,
    completion_rate INTEGER NOT NULL DEFAULT 0 CHECK (completion_rate BETWEEN 0 AND 100),
    start_date TEXT,
    end_date TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (system_id) REFERENCES systems(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS itrs (
    id INTEGER PRIMARY KEY,
    name TEXT NOT NULL,
    subsystem_id INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'inprogress' CHECK (status IN ('complete','inprogress','delayed')),
    progress INTEGER NOT NULL DEFAULT 0 CHECK (progress BETWEEN 0 AND 100),
    quantity INTEGER NOT NULL DEFAULT 1 CHECK (quantity >= 1),
    assigned_to TEXT,
    start_date TEXT,
    end_date TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (subsystem_id) REFERENCES subsystems(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS test_packs (
    id INTEGER PRIMARY KEY,
    nombre_paquete TEXT NOT NULL,
    itr_asociado TEXT,
    sistema TEXT,
    subsistema TEXT,
    estado TEXT NOT NULL DEFAULT 'pendiente' CHECK (estado IN ('pendiente','listo')),
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS tags (
    id INTEGER PRIMARY KEY,
    tag_name TEXT NOT NULL,
    test_pack_id INTEGER NOT NULL,
    estado TEXT NOT NULL DEFAULT 'pendiente' CHECK (estado IN ('pendiente','liberado')),
    fecha_liberacion TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (test_pack_id) REFERENCES test_packs(id) ON DELETE CASCADE,
    CHECK ((estado = 'liberado') = (fecha_liberacion IS NOT NULL))
);

CREATE TABLE IF NOT EXISTS db_activity_log (
    id INTEGER PRIMARY KEY,
    table_name TEXT NOT NULL,
    action TEXT NOT NULL CHECK (action IN ('INSERT','UPDATE','DELETE')),
    user_id INTEGER,
    record_id INTEGER,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    details TEXT
);

CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY,
    username TEXT NOT NULL UNIQUE,
    full_name TEXT,
    password_hash TEXT NOT NULL,
    password_salt TEXT NOT NULL,
    role TEXT NOT NULL CHECK (role IN ('admin','tecnico','user')),
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS user_session (
    token TEXT PRIMARY KEY,
    user_id INTEGER NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    expires_at TEXT NOT NULL,
    FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS report_settings (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    settings TEXT NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS email_recipients (
    id INTEGER PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS uploaded_files (
    id INTEGER PRIMARY KEY,
    folder TEXT NOT NULL DEFAULT '',
    file_name TEXT NOT NULL,
    stored_path TEXT NOT NULL UNIQUE,
    content_type TEXT,
    size_bytes INTEGER NOT NULL,
    file_sha256 TEXT NOT NULL,
    uploaded_by INTEGER,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    FOREIGN KEY (uploaded_by) REFERENCES users(id) ON DELETE SET NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_systems_project ON systems(project_id);
CREATE INDEX IF NOT EXISTS idx_subsystems_system ON subsystems(system_id);
CREATE INDEX IF NOT EXISTS idx_itrs_subsystem ON itrs(subsystem_id);
CREATE INDEX IF NOT EXISTS idx_itrs_status ON itrs(status);
CREATE INDEX IF NOT EXISTS idx_tags_pack ON tags(test_pack_id);
CREATE INDEX IF NOT EXISTS idx_tags_estado ON tags(estado);
CREATE INDEX IF NOT EXISTS idx_test_packs_nombre ON test_packs(nombre_paquete);
CREATE INDEX IF NOT EXISTS idx_activity_table ON db_activity_log(table_name);
CREATE INDEX IF NOT EXISTS idx_user_session_user ON user_session(user_id);

-- Append-only guards
CREATE TRIGGER IF NOT EXISTS forbid_update_activity
BEFORE UPDATE ON db_activity_log
BEGIN
  SELECT RAISE(ABORT, 'UPDATE prohibido: append-only (db_activity_log)');
END;
CREATE TRIGGER IF NOT EXISTS forbid_delete_activity
BEFORE DELETE ON db_activity_log
BEGIN
  SELECT RAISE(ABORT, 'DELETE prohibido: append-only (db_activity_log)');
END;

-- Test packs with tag counters, used by list views and the exporter
CREATE VIEW IF NOT EXISTS v_test_pack_list AS
SELECT
  tp.*,
  (SELECT COUNT(*) FROM tags t WHERE t.test_pack_id = tp.id) AS total_tags,
  (SELECT COUNT(*) FROM tags t WHERE t.test_pack_id = tp.id AND t.estado = 'liberado') AS released_tags
FROM test_packs tp;
''';
