from app import app, db
from models import User, Book
import catalog
import circulation
import bcrypt

with app.app_context():
    # Reset the database
    db.drop_all()
    db.create_all()
    print("🔄 Database reset")

    # Insert Users
    users = [
        {"name": "Admin User", "email": "admin@example.com", "password": "admin123", "role": "admin"},
        {"name": "Student One", "email": "student1@example.com", "password": "student123", "role": "student"},
        {"name": "Student Two", "email": "student2@example.com", "password": "student123", "role": "student"}
    ]

    for u in users:
        hashed_pw = bcrypt.hashpw(u["password"].encode("utf-8"), bcrypt.gensalt()).decode("utf-8")
        user = User(name=u["name"], email=u["email"], password=hashed_pw, role=u["role"])
        db.session.add(user)

    db.session.commit()
    print("✅ Users inserted")

    # Insert Books
    books = [
        {"title": "Python Programming", "author": "John Zelle", "genre": "Programming", "isbn": "9781590282410",
         "publication_year": 2017, "total_copies": 5, "location": "Main library"},
        {"title": "Flask Web Development", "author": "Miguel Grinberg", "genre": "Web", "isbn": "9781491991732",
         "publication_year": 2018, "total_copies": 3, "location": "Sub library"},
        {"title": "Clean Code", "author": "Robert C. Martin", "genre": "Software", "isbn": "9780132350884",
         "publication_year": 2008, "total_copies": 2},
        {"title": "Think Python", "author": "Allen B. Downey", "genre": "Programming", "isbn": "9781491939369",
         "publication_year": 2015, "fulfillment_mode": "digital",
         "access_link": "https://greenteapress.com/thinkpython2/thinkpython2.pdf", "renewal_period_days": 15}
    ]

    for b in books:
        catalog.create_book(b)
    print("✅ Books inserted")

    # Sample loans go through the circulation engine so both records stay paired
    student = User.query.filter_by(email="student1@example.com").first()
    physical = db.session.execute(
        db.select(Book).filter_by(title="Python Programming")).scalar_one()
    digital = db.session.execute(
        db.select(Book).filter_by(title="Think Python")).scalar_one()
    circulation.borrow(physical.book_id, student.user_id)
    circulation.borrow(digital.book_id, student.user_id)
    print("✅ Sample loans inserted")
