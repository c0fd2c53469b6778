from fastapi import APIRouter, Depends, Form, HTTPException, Request
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash, check_password_hash

from app.models.database import get_db
from app.models.user import User

router = APIRouter()


# --- helper: get current logged in user id from the signed session ---
def get_current_user_id(request: Request) -> int | None:
    user_id = request.session.get("user_id")
    if not isinstance(user_id, int):
        return None
    return user_id


def require_user_id(request: Request, db: Session = Depends(get_db)) -> int:
    """Owner id for the tree, always taken from the session and never from the body."""
    user_id = get_current_user_id(request)
    if not user_id or db.get(User, user_id) is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


@router.post("/signup", status_code=201)
def signup(username: str = Form(...), password: str = Form(...), db: Session = Depends(get_db)):
    username = username.strip()
    if not username or not password:
        raise HTTPException(status_code=400, detail="Username and password are required")

    # Check if user exists
    existing_user = db.query(User).filter(User.username == username).first()
    if existing_user:
        raise HTTPException(status_code=409, detail="Username already exists")

    # Hash password
    hashed_pw = generate_password_hash(password)

    # Save user
    new_user = User(username=username, password=hashed_pw)
    db.add(new_user)
    db.commit()
    db.refresh(new_user)

    return {"success": True, "data": {"id": new_user.id, "username": new_user.username}}


@router.post("/login")
def login(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    db: Session = Depends(get_db),
):
    user = db.query(User).filter(User.username == username).first()

    if not user or not check_password_hash(user.password, password):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    # login success → store the id in the signed session cookie
    request.session.clear()
    request.session["user_id"] = user.id
    return {"success": True, "data": {"id": user.id, "username": user.username}}


@router.post("/logout")
def logout(request: Request):
    request.session.clear()
    return {"success": True, "message": "Signed out"}
