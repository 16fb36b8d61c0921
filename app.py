# app.py
import json
import os
from datetime import datetime

import streamlit as st
import requests
from dotenv import load_dotenv


load_dotenv()
BASE_URL = os.getenv("BASE_URL", "http://localhost:8000")

st.set_page_config(page_title="BestSplit", page_icon="💸", layout="wide")

st.title("💸 BestSplit")
st.sidebar.header("Navigation")

current_user = st.sidebar.text_input("Your member id")
page = st.sidebar.radio("Go to", ["Create Group", "Share Group", "Add Expense", "Record Settlement", "Balances", "Activity", "Friends"])


def show_error(res):
    try:
        error_detail = res.json().get("detail", "Unknown error")
    except ValueError:  # JSONDecodeError
        error_detail = res.text or "No response body or invalid JSON"
    st.error(f"❌ Error: {error_detail}")


def fetch_groups():
    """Groups the current user belongs to, or None if the backend refused."""
    res = requests.get(f"{BASE_URL}/groups", params={"member": current_user})
    if res.status_code != 200:
        show_error(res)
        return None
    return res.json()


def pick_group(groups):
    group_options = {f"{group['name']} (#{group['id']})": group for group in groups}
    selected = st.selectbox("Select a Group", options=list(group_options.keys()))
    return group_options[selected]


if not current_user:
    st.info("Enter your member id in the sidebar to get started.")
    st.stop()

# --- CREATE GROUP ---
if page == "Create Group":
    st.header("👥 Create a New Group")
    group_name = st.text_input("Group Name")
    description = st.text_input("Description")
    member_text = st.text_area("Other members (one id per line)")

    if st.button("Create Group"):
        members = [line.strip() for line in member_text.splitlines() if line.strip()]
        payload = {"name": group_name, "description": description, "created_by": current_user, "members": members}
        res = requests.post(f"{BASE_URL}/groups/", json=payload)
        if res.status_code == 201:
            st.success("✅ Group created successfully!")
        else:
            show_error(res)

# --- SHARE GROUP ---
elif page == "Share Group":
    st.header("🔗 Share or Import a Group")
    groups = fetch_groups()
    if groups:
        group = pick_group(groups)
        res = requests.get(f"{BASE_URL}/groups/{group['id']}/export")
        if res.status_code == 200:
            st.code(res.text, language="json")
        else:
            show_error(res)

    shared = st.text_area("Paste a shared group")
    if st.button("Import Group"):
        try:
            payload = json.loads(shared)
        except ValueError:
            st.error("❌ Error: That is not valid group JSON")
        else:
            res = requests.post(f"{BASE_URL}/groups/import", json=payload)
            if res.status_code == 201:
                st.success(f"✅ Imported as group #{res.json()['id']}")
            else:
                show_error(res)

# --- ADD EXPENSE ---
elif page == "Add Expense":
    st.header("💰 Add a New Expense")
    groups = fetch_groups()
    if groups:
        group = pick_group(groups)
        members = group["members"]

        description = st.text_input("Description")
        amount = st.text_input("Total Amount")
        paid_by = st.selectbox("Paid By", options=members, index=members.index(current_user) if current_user in members else 0)
        participants = st.multiselect("Split between", options=members, default=members)
        split_mode = st.radio("Split", ["EQUAL", "CUSTOM"], horizontal=True)

        custom_shares = {}
        if split_mode == "CUSTOM":
            for member in participants:
                custom_shares[member] = st.text_input(f"Share of {member}", key=f"share-{member}")

        if st.button("Add Expense"):
            payload = {
                "description": description,
                "amount": amount,
                "paid_by": paid_by,
                "split_mode": split_mode,
                "participants": participants,
                "custom_shares": custom_shares,
            }
            res = requests.post(f"{BASE_URL}/groups/{group['id']}/expenses/", json=payload)
            if res.status_code == 201:
                st.success("✅ Expense added successfully!")
            else:
                show_error(res)
    elif groups is not None:
        st.warning("You are not in any group yet.")

# --- RECORD SETTLEMENT ---
elif page == "Record Settlement":
    st.header("🤝 Record a Settlement")
    groups = fetch_groups()
    if groups:
        group = pick_group(groups)
        members = group["members"]
        from_user = st.selectbox("Who paid", options=members)
        to_user = st.selectbox("Who received", options=[m for m in members if m != from_user])
        amount = st.text_input("Amount")
        description = st.text_input("Note")

        if st.button("Record Settlement"):
            payload = {"from_user_id": from_user, "to_user_id": to_user, "amount": amount, "description": description}
            res = requests.post(f"{BASE_URL}/groups/{group['id']}/settlements/", json=payload)
            if res.status_code == 201:
                st.success("✅ Settlement recorded!")
            else:
                show_error(res)
    elif groups is not None:
        st.warning("You are not in any group yet.")

# --- BALANCES ---
elif page == "Balances":
    st.header("📊 Group Balances")
    groups = fetch_groups()
    if groups:
        group = pick_group(groups)
        if st.button("Sync from cloud"):
            res = requests.post(f"{BASE_URL}/groups/{group['id']}/sync/")
            if res.status_code == 200:
                report = res.json()
                st.success(f"Synced: {report['applied']} records applied, {report['migrated']} migrated")
            else:
                show_error(res)

        res = requests.get(f"{BASE_URL}/groups/{group['id']}/balances/")
        if res.status_code == 200:
            balances = res.json()["balances"]
            lines = [
                (debtor, creditor, amount)
                for debtor, row in balances.items()
                for creditor, amount in row.items()
                if amount > 0
            ]
            if lines:
                for debtor, creditor, amount in lines:
                    st.markdown(f"💸 **{debtor}** owes **{creditor}** ₹{amount:.2f}")
            else:
                st.markdown("✅ All settled up!")
        else:
            show_error(res)
    elif groups is not None:
        st.warning("You are not in any group yet.")

# --- ACTIVITY ---
elif page == "Activity":
    st.header("🧾 Activity")
    res = requests.get(f"{BASE_URL}/users/{current_user}/activity/")
    if res.status_code == 200:
        entries = res.json()
        if not entries:
            st.markdown("No activity yet.")
        for entry in entries:
            when = datetime.fromtimestamp(entry["date"] / 1000).strftime("%d %b %Y")
            with_whom = ", ".join(entry["participants"])
            if entry["type"] == "YOUR_PAYMENT":
                st.write(f"🟢 {entry['title']} in {entry['group_name']}: you are owed ₹{entry['amount']:.2f} ({when}, with {with_whom})")
            else:
                st.write(f"🔴 {entry['title']} in {entry['group_name']}: you owe {entry['payer_name']} ₹{entry['amount']:.2f} ({when})")
    else:
        show_error(res)

# --- FRIENDS ---
elif page == "Friends":
    st.header("🫂 Friends")
    email = st.text_input("Friend's email")
    if st.button("Add Friend"):
        res = requests.post(f"{BASE_URL}/users/{current_user}/friends/", json={"email": email})
        if res.status_code == 201:
            st.success(f"✅ {res.json()['name']} added!")
        else:
            show_error(res)

    res = requests.get(f"{BASE_URL}/users/{current_user}/friends/")
    if res.status_code == 200:
        friends = res.json()
        if not friends:
            st.markdown("No friends yet.")
        for friend in friends:
            st.write(f"👤 **{friend['name']}** ({friend['email']}), member id `{friend['id']}`")
    else:
        show_error(res)
