# deal/sql.py
from util.db import db


def ensure_schema():
    with db() as conn, conn.cursor() as cur:
        # users 與餘額欄位（錢包）；auth/錢包服務也可能先建立
        cur.execute("""
        CREATE TABLE IF NOT EXISTS users (
          id SERIAL PRIMARY KEY,
          username TEXT UNIQUE,
          balance BIGINT NOT NULL DEFAULT 0,
          created_at TIMESTAMPTZ DEFAULT now()
        );
        """)
        cur.execute("ALTER TABLE users ADD COLUMN IF NOT EXISTS balance BIGINT NOT NULL DEFAULT 0;")

        # 每筆扣款/派彩一個冪等鍵
        cur.execute("""
        CREATE TABLE IF NOT EXISTS wallet_tx (
          idempotency_key TEXT NOT NULL,
          kind TEXT NOT NULL,           -- debit | credit
          user_id INT NOT NULL REFERENCES users(id),
          amount BIGINT NOT NULL,
          reason TEXT,
          balance_after BIGINT,
          created_at TIMESTAMPTZ DEFAULT now(),
          PRIMARY KEY (idempotency_key, kind)
        );
        """)

        cur.execute("""
        CREATE TABLE IF NOT EXISTS deal_rounds (
          id TEXT PRIMARY KEY,
          owner_id INT NOT NULL,
          phase TEXT NOT NULL,          -- opening | offer | decision | completed
          credit_status TEXT NOT NULL DEFAULT 'none',
          version INT NOT NULL DEFAULT 0,
          state JSONB NOT NULL,
          created_at TIMESTAMPTZ NOT NULL,
          completed_at TIMESTAMPTZ
        );
        """)
        cur.execute("ALTER TABLE deal_rounds ADD COLUMN IF NOT EXISTS audit_status TEXT NOT NULL DEFAULT 'none';")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_deal_rounds_owner ON deal_rounds (owner_id, created_at);")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_deal_rounds_phase ON deal_rounds (phase, created_at);")

        # 每位玩家最多一局進行中：owner_id 當主鍵做 compare-and-set
        cur.execute("""
        CREATE TABLE IF NOT EXISTS deal_active_owners (
          owner_id INT PRIMARY KEY,
          round_id TEXT NOT NULL,
          claimed_at TIMESTAMPTZ NOT NULL DEFAULT now()
        );
        """)

        cur.execute("""
        CREATE TABLE IF NOT EXISTS deal_outcomes (
          id BIGSERIAL PRIMARY KEY,
          round_id TEXT UNIQUE NOT NULL,
          owner_id INT NOT NULL,
          bet_amount BIGINT NOT NULL,
          payout BIGINT NOT NULL,
          result JSONB NOT NULL,
          signature TEXT NOT NULL,
          created_at TIMESTAMPTZ NOT NULL
        );
        """)
        cur.execute("CREATE INDEX IF NOT EXISTS idx_deal_outcomes_owner ON deal_outcomes (owner_id, created_at);")
        conn.commit()
