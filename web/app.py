from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, create_engine, select
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

# allow importing the parser from repo root
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from txn_config import GlobalConfig, ParseError, global_config_from_mapping, parse_script  # noqa: E402


APP_DIR = Path(__file__).resolve().parent
CONFIG_PATH = APP_DIR / "config.json"


class Base(DeclarativeBase):
    pass


class Script(Base):
    __tablename__ = "scripts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    original_filename: Mapped[str] = mapped_column(String(512), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    uploaded_by: Mapped[str] = mapped_column(String(128), nullable=False)
    source_text: Mapped[str] = mapped_column(Text, nullable=False)
    parsed_json: Mapped[str] = mapped_column(Text, nullable=False)


class TransactionConfig(Base):
    __tablename__ = "transaction_configs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    script_id: Mapped[int] = mapped_column(ForeignKey("scripts.id"), index=True, nullable=False)
    txn_index: Mapped[int] = mapped_column(Integer, nullable=False)
    start_line: Mapped[int] = mapped_column(Integer, nullable=False)
    sender: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    max_gas: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    sequence_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    disabled_stages_json: Mapped[str] = mapped_column(Text, nullable=False)
    args_json: Mapped[str] = mapped_column(Text, nullable=False)


@dataclass(frozen=True)
class User:
    username: str
    token: str
    role: str


class LoginRequest(BaseModel):
    token: str


class ParseRequest(BaseModel):
    lines: List[str]


def load_config() -> dict:
    if not CONFIG_PATH.exists():
        raise RuntimeError(f"Missing config file: {CONFIG_PATH}")
    return json.loads(CONFIG_PATH.read_text(encoding="utf-8"))


def build_user_index(cfg: dict) -> Dict[str, User]:
    users: Dict[str, User] = {}
    for raw in cfg.get("users", []):
        token = str(raw.get("token", "")).strip()
        if not token:
            continue
        role = str(raw.get("role", "user")).strip().lower()
        if role not in {"admin", "user"}:
            raise RuntimeError(f"unsupported role: {role}")
        users[token] = User(username=str(raw.get("username", "unknown")), token=token, role=role)
    return users


def ensure_admin(user: User) -> None:
    if user.role != "admin":
        raise HTTPException(status_code=403, detail="admin permission required")


def transaction_row_to_json(row: TransactionConfig) -> dict:
    return {
        "id": row.id,
        "script_id": row.script_id,
        "index": row.txn_index,
        "start_line": row.start_line,
        "sender": row.sender,
        "max_gas": int(row.max_gas) if row.max_gas is not None else None,
        "sequence_number": int(row.sequence_number) if row.sequence_number is not None else None,
        "disabled_stages": json.loads(row.disabled_stages_json),
        "args": json.loads(row.args_json),
    }


def create_app(cfg: Optional[dict] = None) -> FastAPI:
    if cfg is None:
        cfg = load_config()

    db_path = Path(cfg.get("database", {}).get("sqlite_path", "web/data/app.db"))
    if not db_path.is_absolute():
        db_path = REPO_ROOT / db_path
    db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(f"sqlite+pysqlite:///{db_path}", future=True)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    Base.metadata.create_all(engine)

    user_index = build_user_index(cfg)
    try:
        registry: GlobalConfig = global_config_from_mapping(cfg.get("registry", {}))
    except ParseError as exc:
        raise RuntimeError(f"invalid account registry in config: {exc}") from exc

    app = FastAPI(title="Transaction Directive API", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.get("server", {}).get("cors_origins", ["*"]),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    bearer = HTTPBearer(auto_error=False)

    def get_db() -> Session:
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    def get_current_user(
        credentials: HTTPAuthorizationCredentials = Depends(bearer),
    ) -> User:
        if credentials is None or credentials.scheme.lower() != "bearer":
            raise HTTPException(status_code=401, detail="missing bearer token")
        token = credentials.credentials.strip()
        user = user_index.get(token)
        if user is None:
            raise HTTPException(status_code=401, detail="invalid token")
        return user

    @app.get("/api/health")
    def health() -> dict:
        return {"ok": True}

    @app.post("/api/login")
    def login(payload: LoginRequest) -> dict:
        token = payload.token.strip()
        user = user_index.get(token)
        if not user:
            raise HTTPException(status_code=401, detail="invalid token")
        return {
            "username": user.username,
            "role": user.role,
            "token": user.token,
        }

    @app.get("/api/me")
    def me(user: User = Depends(get_current_user)) -> dict:
        return {
            "username": user.username,
            "role": user.role,
        }

    @app.get("/api/accounts")
    def list_accounts(user: User = Depends(get_current_user)) -> dict:
        return {
            "accounts": sorted(registry.accounts.keys()),
            "genesis_accounts": sorted(registry.genesis_accounts.keys()),
        }

    @app.post("/api/directives/parse")
    def parse_directives(payload: ParseRequest, user: User = Depends(get_current_user)) -> dict:
        try:
            return parse_script("\n".join(payload.lines), registry)
        except ParseError as e:
            raise HTTPException(status_code=400, detail=f"parse failed: {e}")

    @app.post("/api/scripts/upload")
    async def upload_script(
        file: UploadFile = File(...),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        ensure_admin(user)

        raw = await file.read()
        try:
            source_text = raw.decode("utf-8")
        except UnicodeDecodeError:
            raise HTTPException(status_code=400, detail="script must be UTF-8 text")

        try:
            parsed = parse_script(source_text, registry)
        except ParseError as e:
            raise HTTPException(status_code=400, detail=f"parse failed: {e}")

        script = Script(
            original_filename=file.filename or "script",
            uploaded_at=datetime.now(timezone.utc),
            uploaded_by=user.username,
            source_text=source_text,
            parsed_json=json.dumps(parsed, ensure_ascii=False),
        )
        db.add(script)
        db.flush()

        for txn in parsed["transactions"]:
            config = txn["config"]
            db.add(
                TransactionConfig(
                    script_id=script.id,
                    txn_index=txn["index"],
                    start_line=txn["start_line"],
                    sender=config["sender"],
                    max_gas=str(config["max_gas"]) if config["max_gas"] is not None else None,
                    sequence_number=(
                        str(config["sequence_number"]) if config["sequence_number"] is not None else None
                    ),
                    disabled_stages_json=json.dumps(config["disabled_stages"]),
                    args_json=json.dumps(config["args"]),
                )
            )
        db.commit()

        return {
            "script_id": script.id,
            "original_filename": script.original_filename,
            "transactions_count": len(parsed["transactions"]),
        }

    @app.get("/api/scripts")
    def list_scripts(
        limit: int = Query(default=500, ge=1, le=2000),
        offset: int = Query(default=0, ge=0),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        rows = db.scalars(
            select(Script).order_by(Script.id.desc()).offset(offset).limit(limit + 1)
        ).all()
        has_more = len(rows) > limit
        items = [
            {
                "id": script.id,
                "original_filename": script.original_filename,
                "uploaded_at": script.uploaded_at.isoformat(),
                "uploaded_by": script.uploaded_by,
            }
            for script in rows[:limit]
        ]
        return {
            "items": items,
            "offset": offset,
            "limit": limit,
            "returned": len(items),
            "has_more": has_more,
        }

    @app.get("/api/scripts/{script_id}")
    def get_script(
        script_id: int,
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        script = db.get(Script, script_id)
        if not script:
            raise HTTPException(status_code=404, detail="script not found")
        return {
            "id": script.id,
            "original_filename": script.original_filename,
            "uploaded_at": script.uploaded_at.isoformat(),
            "uploaded_by": script.uploaded_by,
            "source_text": script.source_text,
            "parsed": json.loads(script.parsed_json),
        }

    @app.get("/api/transactions")
    def list_transactions(
        script_id: Optional[int] = Query(default=None),
        sender: Optional[str] = Query(default=None),
        limit: int = Query(default=500, ge=1, le=2000),
        offset: int = Query(default=0, ge=0),
        user: User = Depends(get_current_user),
        db: Session = Depends(get_db),
    ) -> dict:
        stmt = select(TransactionConfig).order_by(TransactionConfig.script_id.desc(), TransactionConfig.txn_index)
        if script_id is not None:
            stmt = stmt.where(TransactionConfig.script_id == script_id)
        if sender:
            stmt = stmt.where(TransactionConfig.sender == sender.strip().lower())

        rows = db.scalars(stmt.offset(offset).limit(limit + 1)).all()
        has_more = len(rows) > limit
        out = [transaction_row_to_json(row) for row in rows[:limit]]
        return {
            "items": out,
            "offset": offset,
            "limit": limit,
            "returned": len(out),
            "has_more": has_more,
        }

    return app
