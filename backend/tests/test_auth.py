import os
import time
import unittest
from unittest.mock import patch

import jwt
from fastapi import Depends, FastAPI, HTTPException
from fastapi.testclient import TestClient

from app.config import JwtConfig, Settings
from app.middleware import AuthenticatedUser, extract_user_from_payload, get_current_user, verify_jwt_token


SECRET = "moments-test-secret-0123456789abcdef"


class TestAuth(unittest.TestCase):
    def setUp(self) -> None:
        self.config = JwtConfig(secret=SECRET)

    def test_identity_prefers_email(self) -> None:
        self.assertEqual(AuthenticatedUser(id="u1", email="a@example.com").identity, "a@example.com")
        self.assertEqual(AuthenticatedUser(id="u1").identity, "u1")

    def test_valid_token(self) -> None:
        token = jwt.encode({"sub": "u1", "email": "a@example.com"}, SECRET, algorithm="HS256")
        user = extract_user_from_payload(verify_jwt_token(token, self.config))
        self.assertEqual(user.id, "u1")
        self.assertEqual(user.email, "a@example.com")

    def test_expired_token(self) -> None:
        token = jwt.encode({"sub": "u1", "exp": int(time.time()) - 60}, SECRET, algorithm="HS256")
        with self.assertRaises(HTTPException) as ctx:
            verify_jwt_token(token, self.config)
        self.assertEqual(ctx.exception.status_code, 401)

    def test_wrong_secret(self) -> None:
        token = jwt.encode({"sub": "u1"}, "another-secret-0123456789abcdefgh", algorithm="HS256")
        with self.assertRaises(HTTPException):
            verify_jwt_token(token, self.config)

    def test_missing_secret_is_a_server_error(self) -> None:
        token = jwt.encode({"sub": "u1"}, SECRET, algorithm="HS256")
        with self.assertRaises(HTTPException) as ctx:
            verify_jwt_token(token, JwtConfig())
        self.assertEqual(ctx.exception.status_code, 500)

    def test_missing_subject(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            extract_user_from_payload({"email": "a@example.com"})
        self.assertEqual(ctx.exception.detail, "Token missing user ID")


class TestSecretConfiguration(unittest.TestCase):
    def test_flat_env_vars_fill_jwt_secret(self) -> None:
        with patch.dict(os.environ, {"AUTH_SECRET": SECRET}):
            self.assertEqual(Settings().jwt.secret, SECRET)
        with patch.dict(os.environ, {"JWT_SECRET": "fallback-secret"}):
            os.environ.pop("AUTH_SECRET", None)
            self.assertEqual(Settings().jwt.secret, "fallback-secret")

    def test_dependency_uses_app_settings(self) -> None:
        app = FastAPI()
        app.state.settings = Settings(jwt=JwtConfig(secret=SECRET))

        @app.get("/me")
        async def me(user: AuthenticatedUser = Depends(get_current_user)):
            return {"identity": user.identity}

        token = jwt.encode({"sub": "u1", "email": "a@example.com"}, SECRET, algorithm="HS256")
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("AUTH_SECRET", None)
            os.environ.pop("JWT_SECRET", None)
            resp = TestClient(app).get("/me", headers={"Authorization": f"Bearer {token}"})

        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.json(), {"identity": "a@example.com"})


if __name__ == "__main__":
    unittest.main()
