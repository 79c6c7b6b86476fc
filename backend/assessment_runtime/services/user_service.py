from __future__ import annotations

from sqlalchemy.orm import Session

from assessment_runtime.models.user import User


def ensure_user_exists(db: Session, user_id: int, *, role: str = "student") -> User:
    """Return the user row for `user_id`, creating a minimal one when missing.

    Sessions and submission records reference `users.id`; demo clients pick any
    numeric id, so the row is created on first use.
    """

    user = db.query(User).filter(User.id == int(user_id)).first()
    if user:
        return user

    uid = int(user_id)
    email = f"{role}{uid}@demo.local"
    if db.query(User).filter(User.email == email).first():
        email = f"{role}{uid}-{uid}@demo.local"

    user = User(id=uid, email=email, full_name=f"{role.title()} {uid}", role=role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user
