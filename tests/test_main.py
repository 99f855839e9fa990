from conftest import register


def test_register_user(client):
    response = client.post("/api/auth/register", json={
        "username": "testuser",
        "email": "test@example.com",
        "password": "password123",
        "displayName": "Test User",
    })
    assert response.status_code == 201
    body = response.json()
    assert body["user"]["username"] == "testuser"
    assert body["user"]["displayName"] == "Test User"
    assert "password" not in body["user"]
    assert body["token_type"] == "bearer"


def test_register_rejects_duplicates(client):
    register(client, "alice")
    response = client.post("/api/auth/register", json={
        "username": "alice2",
        "email": "alice@example.com",
        "password": "password123",
        "displayName": "Alice",
    })
    assert response.status_code == 400
    assert response.json()["detail"] == "User already exists with this email"

    response = client.post("/api/auth/register", json={
        "username": "alice",
        "email": "other@example.com",
        "password": "password123",
        "displayName": "Alice",
    })
    assert response.status_code == 400
    assert response.json()["detail"] == "Username already taken"


def test_login_and_me(client):
    user, _ = register(client, "alice")

    response = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "wrong-password"})
    assert response.status_code == 401

    response = client.post("/api/auth/login", json={"email": "alice@example.com", "password": "password123"})
    assert response.status_code == 200
    token = response.json()["access_token"]

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["user"]["id"] == user["id"]


def test_logout(client):
    _, auth = register(client, "alice")
    response = client.post("/api/auth/logout", headers=auth)
    assert response.status_code == 200
    assert response.json() == {"message": "Logged out successfully"}


def test_auth_required(client):
    assert client.get("/api/auth/me").status_code == 401
    assert client.post("/api/posts", json={"title": "t", "content": "c"}).status_code == 401
    bad = {"Authorization": "Bearer not-a-token"}
    assert client.get("/api/bookmarks", headers=bad).status_code == 401


def test_post_lifecycle(client):
    alice, alice_auth = register(client, "alice")
    bob, bob_auth = register(client, "bob")

    response = client.post("/api/posts", headers=alice_auth, json={
        "title": "Hello", "content": "World", "tags": ["intro"],
    })
    assert response.status_code == 201
    post = response.json()["post"]
    assert post["authorId"] == alice["id"]
    assert post["excerpt"] == "World"

    assert client.post(f"/api/posts/{post['id']}/like", headers=bob_auth).status_code == 200
    client.post(f"/api/posts/{post['id']}/like", headers=bob_auth)

    [seen] = client.get("/api/posts", headers=bob_auth).json()["posts"]
    assert seen["likeCount"] == 1
    assert seen["isLiked"] is True
    assert seen["author"]["username"] == "alice"

    [anonymous] = client.get("/api/posts").json()["posts"]
    assert anonymous["isLiked"] is False

    assert client.get("/api/posts", params={"search": "wor"}).json()["posts"][0]["id"] == post["id"]
    assert client.get("/api/posts", params={"search": "xyz"}).json()["posts"] == []
    assert len(client.get("/api/posts", params={"tag": "intro"}).json()["posts"]) == 1
    assert len(client.get("/api/posts", params={"authorId": bob["id"]}).json()["posts"]) == 0

    response = client.put(f"/api/posts/{post['id']}", headers=bob_auth, json={"title": "Hijacked"})
    assert response.status_code == 404
    response = client.put(f"/api/posts/{post['id']}", headers=alice_auth, json={"title": "Edited"})
    assert response.json()["post"]["title"] == "Edited"

    assert client.delete(f"/api/posts/{post['id']}", headers=bob_auth).status_code == 404
    assert client.delete(f"/api/posts/{post['id']}", headers=alice_auth).status_code == 200
    assert client.get(f"/api/posts/{post['id']}").status_code == 404


def test_update_rejects_null_title(client):
    _, auth = register(client, "alice")
    post_id = client.post("/api/posts", headers=auth, json={"title": "Hello", "content": "World"}).json()["post"]["id"]

    assert client.put(f"/api/posts/{post_id}", headers=auth, json={"title": None}).status_code == 422
    assert client.put(f"/api/posts/{post_id}", headers=auth, json={"published": None}).status_code == 422

    response = client.get("/api/posts", params={"search": "wor"})
    assert response.status_code == 200
    assert response.json()["posts"][0]["title"] == "Hello"


def test_author_can_edit_and_publish_draft(client):
    _, alice_auth = register(client, "alice")
    _, bob_auth = register(client, "bob")
    draft = client.post("/api/posts", headers=alice_auth, json={
        "title": "Draft", "content": "Soon", "published": False,
    }).json()["post"]
    assert client.get(f"/api/posts/{draft['id']}").status_code == 404

    response = client.put(f"/api/posts/{draft['id']}", headers=bob_auth, json={"published": True})
    assert response.status_code == 404

    response = client.put(f"/api/posts/{draft['id']}", headers=alice_auth, json={"title": "Ready", "published": True})
    assert response.status_code == 200
    assert response.json()["post"]["published"] is True

    post = client.get(f"/api/posts/{draft['id']}").json()["post"]
    assert post["title"] == "Ready"
    assert post["createdAt"].endswith(("Z", "+00:00"))


def test_long_content_gets_truncated_excerpt(client):
    _, auth = register(client, "alice")
    post = client.post("/api/posts", headers=auth, json={"title": "Long", "content": "x" * 300}).json()["post"]
    assert post["excerpt"] == "x" * 200 + "..."


def test_comments_and_bookmarks(client):
    alice, alice_auth = register(client, "alice")
    _, bob_auth = register(client, "bob")
    post_id = client.post("/api/posts", headers=alice_auth, json={"title": "Hi", "content": "there"}).json()["post"]["id"]

    response = client.post(f"/api/posts/{post_id}/comments", headers=bob_auth, json={"content": "Nice"})
    assert response.status_code == 201
    comment_id = response.json()["comment"]["id"]

    comments = client.get(f"/api/posts/{post_id}/comments").json()["comments"]
    assert comments[0]["author"]["username"] == "bob"

    assert client.delete(f"/api/comments/{comment_id}", headers=alice_auth).status_code == 404
    assert client.delete(f"/api/comments/{comment_id}", headers=bob_auth).status_code == 200

    client.post(f"/api/posts/{post_id}/bookmark", headers=bob_auth)
    bookmarks = client.get("/api/bookmarks", headers=bob_auth).json()["posts"]
    assert [p["id"] for p in bookmarks] == [post_id]
    assert client.delete(f"/api/posts/{post_id}/bookmark", headers=bob_auth).json() == {"success": True}

    assert client.post("/api/posts/999/like", headers=bob_auth).status_code == 404
    assert client.post("/api/posts/999/comments", headers=bob_auth, json={"content": "?"}).status_code == 404


def test_follow_and_profile(client):
    alice, alice_auth = register(client, "alice")
    bob, bob_auth = register(client, "bob")

    assert client.post(f"/api/users/{alice['id']}/follow", headers=alice_auth).status_code == 400
    assert client.post("/api/users/999/follow", headers=alice_auth).status_code == 404

    first = client.post(f"/api/users/{bob['id']}/follow", headers=alice_auth).json()["follow"]
    second = client.post(f"/api/users/{bob['id']}/follow", headers=alice_auth).json()["follow"]
    assert first["id"] == second["id"]

    profile = client.get(f"/api/users/{bob['id']}", headers=alice_auth).json()["user"]
    assert profile["followerCount"] == 1
    assert profile["isFollowing"] is True
    assert "password" not in profile

    followers = client.get(f"/api/users/{bob['id']}/followers").json()["users"]
    assert [u["username"] for u in followers] == ["alice"]

    assert client.delete(f"/api/users/{bob['id']}/follow", headers=alice_auth).json() == {"success": True}
    assert client.get("/api/users/999").status_code == 404


def test_discovery(client):
    alice, alice_auth = register(client, "alice")
    bob, _ = register(client, "bob")
    client.post("/api/posts", headers=alice_auth, json={"title": "A", "content": "a", "tags": ["python"]})

    assert client.get("/api/trending/tags").json() == {"tags": [{"tag": "python", "count": 1}]}

    authors = client.get("/api/suggested/authors", headers=alice_auth).json()["authors"]
    assert [a["id"] for a in authors] == [bob["id"]]


def test_messaging(client):
    alice, alice_auth = register(client, "alice")
    bob, bob_auth = register(client, "bob")

    for text in ("one", "two", "three"):
        response = client.post("/api/messages", headers=alice_auth, json={"receiverId": bob["id"], "content": text})
        assert response.status_code == 201

    assert client.get("/api/messages/unread-count", headers=bob_auth).json() == {"count": 3}

    [conversation] = client.get("/api/messages/conversations", headers=bob_auth).json()["conversations"]
    assert conversation["participant"]["id"] == alice["id"]
    assert conversation["lastMessage"]["content"] == "three"
    assert conversation["unreadCount"] == 3

    thread = client.get(f"/api/messages/{alice['id']}", headers=bob_auth).json()["messages"]
    assert [m["content"] for m in thread] == ["one", "two", "three"]

    assert client.post(f"/api/messages/{alice['id']}/read", headers=bob_auth).json() == {"success": True}
    assert client.get("/api/messages/unread-count", headers=bob_auth).json() == {"count": 0}

    response = client.post("/api/messages", headers=alice_auth, json={"receiverId": 999, "content": "hi"})
    assert response.status_code == 404


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}
