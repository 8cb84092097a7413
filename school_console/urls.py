# The collection engine serves no pages; the console front end owns routing.
urlpatterns = []
